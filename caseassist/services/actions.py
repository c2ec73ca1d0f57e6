"""Built-in legal-practice action types.

Payload schemas and confirmation prompts for the actions the assistant may
propose. The executors themselves belong to the domain services (tasks,
calendar, documents, email) and are bound in by the host application via
build_default_registry(). Only bound action types are registered, so the
assistant is never offered an action that nothing can perform.
"""

from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from caseassist.services.action_registry import ActionRegistry, ActionSpec, Executor
from caseassist.utils.redaction import CONFIDENTIAL

Priority = Literal["Low", "Medium", "High", "Urgent"]

# Free text written by or for the client; masked in logs
ClientText = Annotated[str, CONFIDENTIAL]
OptionalClientText = Annotated[str | None, CONFIDENTIAL]


class ActionPayload(BaseModel):
    """Base for action payloads: unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class CreateTaskPayload(ActionPayload):
    title: str = Field(..., min_length=1, max_length=200)
    case_id: str
    assigned_to: str
    due_date: date
    due_time: str | None = Field(None, pattern=r"^\d{2}:\d{2}$")
    description: OptionalClientText = None
    priority: Priority = "Medium"
    task_type: str | None = None
    estimated_hours: float | None = Field(None, gt=0)


class UpdateTaskPayload(ActionPayload):
    task_id: str
    title: str | None = Field(None, min_length=1, max_length=200)
    description: OptionalClientText = None
    assigned_to: str | None = None
    due_date: date | None = None
    due_time: str | None = Field(None, pattern=r"^\d{2}:\d{2}$")
    priority: Priority | None = None
    status: Literal["Pending", "InProgress", "Completed", "Cancelled"] | None = None


class CompleteTaskPayload(ActionPayload):
    task_id: str


class CreateDeadlinePayload(ActionPayload):
    title: str = Field(..., min_length=1, max_length=200)
    case_id: str
    due_date: date
    description: OptionalClientText = None
    reminder_days: list[int] = Field(default_factory=list)


class ScheduleEventPayload(ActionPayload):
    title: str = Field(..., min_length=1, max_length=200)
    start: datetime
    end: datetime | None = None
    all_day: bool = False
    case_id: str | None = None
    description: OptionalClientText = None
    reminder_minutes: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def end_after_start(self) -> "ScheduleEventPayload":
        if self.end is not None and self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class DraftEmailPayload(ActionPayload):
    email_id: str
    tone: Literal["Formal", "Professional", "Brief", "Detailed"] = "Professional"
    recipient_type: Literal["Client", "OpposingCounsel", "Court", "ThirdParty", "Internal"] | None = None
    instructions: OptionalClientText = None


class GenerateDocumentPayload(ActionPayload):
    document_type: str = Field(..., min_length=1)
    instructions: ClientText = Field(..., min_length=1)
    case_id: str | None = None
    template_id: str | None = None
    context: Annotated[dict[str, Any], CONFIDENTIAL] = Field(default_factory=dict)


def _describe_task(payload: CreateTaskPayload) -> str:
    when = payload.due_date.isoformat()
    if payload.due_time:
        when = f"{when} {payload.due_time}"
    return (
        f"Create task '{payload.title}' for {payload.assigned_to}, "
        f"due {when} ({payload.priority} priority)"
    )


def _describe_update(payload: UpdateTaskPayload) -> str:
    changes = payload.model_dump(exclude={"task_id"}, exclude_none=True, mode="json")
    fields = ", ".join(sorted(changes)) or "nothing"
    return f"Update task {payload.task_id}: {fields}"


def _describe_deadline(payload: CreateDeadlinePayload) -> str:
    return f"Add deadline '{payload.title}' on {payload.due_date.isoformat()}"


def _describe_event(payload: ScheduleEventPayload) -> str:
    if payload.all_day:
        return f"Schedule '{payload.title}' on {payload.start.date().isoformat()} (all day)"
    return f"Schedule '{payload.title}' at {payload.start.isoformat(timespec='minutes')}"


def _describe_email(payload: DraftEmailPayload) -> str:
    return f"Draft a {payload.tone.lower()} reply to email {payload.email_id}"


def _describe_document(payload: GenerateDocumentPayload) -> str:
    return f"Generate a {payload.document_type} document: {payload.instructions[:80]}"


# action_type -> (payload model, tool description, confirmation prompt builder)
DEFAULT_ACTIONS: dict[str, tuple[type[ActionPayload], str, Any]] = {
    "CreateTask": (CreateTaskPayload, "Create a task on a case.", _describe_task),
    "UpdateTask": (UpdateTaskPayload, "Change fields of an existing task.", _describe_update),
    "CompleteTask": (
        CompleteTaskPayload,
        "Mark an existing task as completed.",
        lambda p: f"Mark task {p.task_id} as completed",
    ),
    "CreateDeadline": (
        CreateDeadlinePayload,
        "Record a procedural or contractual deadline on a case.",
        _describe_deadline,
    ),
    "ScheduleEvent": (
        ScheduleEventPayload,
        "Put a hearing, meeting or reminder on the calendar.",
        _describe_event,
    ),
    "DraftEmail": (DraftEmailPayload, "Draft a reply to a received email.", _describe_email),
    "GenerateDocument": (
        GenerateDocumentPayload,
        "Generate a legal document from instructions.",
        _describe_document,
    ),
}


def build_default_registry(
    executors: dict[str, Executor] | None = None,
) -> ActionRegistry:
    """Build a registry of the built-in action types that have an executor.

    Args:
        executors: action_type -> executor provided by the domain services.

    Returns:
        ActionRegistry with one entry per bound built-in action type (empty
        when no executors are given).

    Raises:
        ValueError: If an executor is given for an unknown action type.
    """
    executors = executors or {}
    unknown = set(executors) - set(DEFAULT_ACTIONS)
    if unknown:
        raise ValueError(f"No built-in action type named: {', '.join(sorted(unknown))}")

    registry = ActionRegistry()
    for action_type, (model, description, describe) in DEFAULT_ACTIONS.items():
        executor = executors.get(action_type)
        if executor is None:
            continue
        registry.register(
            ActionSpec(
                action_type=action_type,
                payload_model=model,
                executor=executor,
                description=description,
                describe=describe,
            )
        )
    return registry
