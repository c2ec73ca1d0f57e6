"""FastAPI application for the CaseAssist API.

Provides the application factory with routers and exception handlers
configured, plus the module-level ``app`` served by uvicorn.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("caseassist").setLevel(logging.INFO)
from fastapi.responses import JSONResponse

from caseassist.api.routes import batch_jobs, conversations, usage
from caseassist.config import CaseAssistConfig, load_config
from caseassist.db.connection import init_db
from caseassist.errors import (
    DomainError,
    InvalidActionPayloadError,
    ModelProviderError,
    ModelTimeoutError,
    NotFoundError,
    PricingNotFoundError,
    RateLimitError,
    UnknownActionTypeError,
    error_body,
)
from caseassist.services import ActionRegistry, ModelProvider, ModelTier
from caseassist.services.actions import build_default_registry

logger = logging.getLogger(__name__)

# First match wins; order subclasses before their bases
_STATUS_BY_ERROR: list[tuple[type[DomainError], int]] = [
    (NotFoundError, 404),
    (UnknownActionTypeError, 422),
    (InvalidActionPayloadError, 422),
    (ModelTimeoutError, 504),
    (RateLimitError, 429),
    (ModelProviderError, 502),
    (PricingNotFoundError, 500),
]


def status_for(error: DomainError) -> int:
    """HTTP status code for a domain error (state errors are 409)."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 409


def _default_provider() -> ModelProvider | None:
    """Anthropic provider when an API key is configured."""
    if not os.environ.get("ANTHROPIC_API_KEY"):
        logger.warning("ANTHROPIC_API_KEY not set; conversation turns are unavailable")
        return None
    from caseassist.services.anthropic_provider import DEFAULT_MODEL, AnthropicProvider

    model = os.environ.get("CASEASSIST_MODEL", DEFAULT_MODEL)
    tier = ModelTier(os.environ.get("CASEASSIST_MODEL_TIER", ModelTier.fast.value))
    return AnthropicProvider(model=model, tier=tier)


def create_app(
    config: CaseAssistConfig | None = None,
    registry: ActionRegistry | None = None,
    provider: ModelProvider | None = None,
    init_database: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Engine configuration (loaded from file/env when omitted).
        registry: Action registry (built-in action types when omitted).
        provider: Model provider (Anthropic when omitted and configured).
        init_database: Create missing tables on startup.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Async lifespan: create tables and resolve the model provider."""
        if init_database:
            init_db()
        if app.state.provider is None:
            app.state.provider = _default_provider()
        yield

    app = FastAPI(
        title="CaseAssist API",
        description="Confirmation-gated AI assistant for case management",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config or load_config()
    app.state.registry = registry or build_default_registry()
    if not app.state.registry.action_types():
        logger.warning("No action executors bound; the assistant can answer but not act")
    app.state.provider = provider

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        """Handle DomainError exceptions with consistent format.

        Args:
            request: The incoming request.
            exc: The DomainError exception.

        Returns:
            JSONResponse with error details.
        """
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content=error_body(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"code": None, "message": str(exc)})

    # Include routers
    app.include_router(conversations.router, prefix="/api/v1")
    app.include_router(batch_jobs.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")

    @app.get("/health")
    def health_check() -> dict:
        """Liveness check."""
        return {
            "status": "ok",
            "provider": getattr(app.state.provider, "model", None),
            "action_types": app.state.registry.action_types(),
        }

    return app


app = create_app()
