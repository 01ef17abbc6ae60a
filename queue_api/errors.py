# queue_api/errors.py


class QueueError(Exception):
    """Base class for every rejection raised by the queue engine."""
    status_code = 400
    code = "queue_error"
    default_message = "Queue operation failed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConflictError(QueueError):
    """The department is already serving a patient."""
    status_code = 409
    code = "conflict"
    default_message = "Department is already serving a patient."


class InvalidTransitionError(QueueError):
    status_code = 400
    code = "invalid_transition"
    default_message = "Status transition is not allowed."


class NotFoundError(QueueError):
    status_code = 404
    code = "not_found"
    default_message = "Check-in not found."


class StoreUnavailableError(QueueError):
    """The check-in store failed to read or write."""
    status_code = 503
    code = "store_unavailable"
    default_message = "Check-in store is unavailable."
