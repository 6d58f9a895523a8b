from src.core.workflow.definitions import CompiledWorkflow, WorkflowRegistry
from src.core.workflow.errors import (
    ApplicationNotFoundError,
    AuditChainMismatchError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    QueryAlreadyOpenError,
    QueryNotFoundError,
    SlaBatchFailedError,
    TaskNotFoundError,
    TaskSupersededError,
    ValidationFailedError,
    WorkflowDefinitionError,
    WorkflowError,
)
from src.core.workflow.models import (
    ActionRequest,
    ActionResponse,
    ApplicationCreateRequest,
    ApplicationRecord,
    AuditEventRecord,
    BreachSweepResult,
    ChainVerificationResult,
    OfficerPosting,
    QueryRecord,
    TaskRecord,
    TransitionOutcome,
)
from src.core.workflow.repository import WorkflowRepository, WorkflowUnitOfWork
from src.core.workflow.service import WorkflowService

__all__ = [
    "ActionRequest",
    "ActionResponse",
    "ApplicationCreateRequest",
    "ApplicationNotFoundError",
    "ApplicationRecord",
    "AuditChainMismatchError",
    "AuditEventRecord",
    "BreachSweepResult",
    "ChainVerificationResult",
    "CompiledWorkflow",
    "ForbiddenError",
    "InvalidStateError",
    "InvalidTransitionError",
    "OfficerPosting",
    "QueryAlreadyOpenError",
    "QueryNotFoundError",
    "QueryRecord",
    "SlaBatchFailedError",
    "TaskNotFoundError",
    "TaskRecord",
    "TaskSupersededError",
    "TransitionOutcome",
    "ValidationFailedError",
    "WorkflowDefinitionError",
    "WorkflowError",
    "WorkflowRegistry",
    "WorkflowRepository",
    "WorkflowService",
    "WorkflowUnitOfWork",
]
