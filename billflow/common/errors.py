"""Exception hierarchy shared by the task engine, handlers and HTTP layer."""


class BillingError(Exception):
    """Base class for every error raised by billing code."""


class UnknownTaskTypeError(BillingError):
    """No handler is registered for the requested task type."""


class TaskNotFoundError(BillingError):
    """The task row is gone: the work is done or was never needed."""


class ConflictError(BillingError):
    """An entity is not in the state the operation requires."""


class DataIntegrityError(BillingError):
    """A referenced entity is missing or inconsistent with its task."""


class TransientExternalError(BillingError):
    """A collaborator failed in a way that may succeed on a later attempt."""


class BusinessFailure(BillingError):
    """The processor refused an operation for a business reason.

    Handlers turn this into an explicit failed state plus a notification
    instead of retrying it.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
