"""
Domain errors for trial and quote intake.

Each error carries the HTTP status the API layer reports it with; the
handler is registered in server.py. Store failures are not wrapped: pymongo
errors propagate as-is and surface as 500.
"""


class IntakeError(Exception):
    """Base exception for intake/lifecycle operations."""
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TrialValidationError(IntakeError):
    """Malformed or missing fields rejected by the lifecycle rules."""
    status_code = 400


class DuplicateIdentityError(IntakeError):
    """The email/phone already has a trial."""
    status_code = 400

    def __init__(self, message: str = "This contact has already requested a trial. Please check your email or contact support."):
        super().__init__(message)


class RecordNotFoundError(IntakeError):
    status_code = 404

    def __init__(self, kind: str = "Trial", record_id: str = None):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found")


class AccountGenerationError(IntakeError):
    """Unexpected fault while deriving trial credentials."""
    status_code = 500

    def __init__(self, message: str = "Trial account generation failed"):
        super().__init__(message)


class TrialAccessDeniedError(IntakeError):
    """Login attempted on a trial that is not active or already ended."""
    status_code = 403

    def __init__(self, message: str = "Trial period has expired"):
        super().__init__(message)


class InvalidStatusTransitionError(IntakeError):
    status_code = 409

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot change trial status from '{current}' to '{target}'")
