class WorkflowError(Exception):
    @property
    def code(self) -> str:
        message = str(self)
        return message.split(":", maxsplit=1)[0].strip() if message else type(self).__name__


class ApplicationNotFoundError(WorkflowError):
    pass


class InvalidTransitionError(WorkflowError):
    pass


class InvalidStateError(WorkflowError):
    pass


class ForbiddenError(WorkflowError):
    pass


class TaskNotFoundError(WorkflowError):
    pass


class TaskSupersededError(WorkflowError):
    pass


class QueryAlreadyOpenError(WorkflowError):
    pass


class QueryNotFoundError(WorkflowError):
    pass


class ValidationFailedError(WorkflowError):
    pass


class WorkflowDefinitionError(WorkflowError):
    pass


class SlaBatchFailedError(WorkflowError):
    pass


class AuditChainMismatchError(WorkflowError):
    pass
