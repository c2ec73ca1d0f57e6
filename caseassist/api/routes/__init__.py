"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from caseassist.api.routes import batch_jobs, conversations, usage

__all__ = [
    "batch_jobs",
    "conversations",
    "usage",
]
