class OperationError(Exception):
    """Base for caller-visible failures raised by the core layer."""

    code = "OPERATION_ERROR"
    http_status = 400


class OperationNotFound(OperationError):
    code = "OPERATION_NOT_FOUND"
    http_status = 404

    def __init__(self, operation_id: str):
        super().__init__(f"unknown operation: {operation_id}")
        self.operation_id = operation_id


class EnrollmentExists(OperationError):
    """A completed enrollment already exists; re-enroll explicitly to replace it."""

    code = "ENROLLMENT_EXISTS"
    http_status = 409

    def __init__(self, user_id: str):
        super().__init__(f"user {user_id} is already enrolled")
        self.user_id = user_id


class NotEnrolled(OperationError):
    code = "NOT_ENROLLED"
    http_status = 409

    def __init__(self, user_id: str):
        super().__init__(f"user {user_id} has no completed enrollment")
        self.user_id = user_id


class InvalidTransition(OperationError):
    """Requested transition does not apply to the operation's current state."""

    code = "INVALID_TRANSITION"
    http_status = 409


class InvalidToken(OperationError):
    code = "INVALID_TOKEN"
    http_status = 401
