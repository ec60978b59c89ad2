"""Error taxonomy for enrollment, reconciliation and the mesh directory client.

Every error carries the HTTP status it maps to and a ``public_message`` that
is safe to return to callers. Anything more specific (provider response text,
internal identifiers) stays in ``detail`` and is only logged server-side.
"""

INVALID_TOKEN_MESSAGE = "Invalid or expired token"
MISSING_KEY_MESSAGE = "No mesh pre-authorization key configured for this organization"
GENERIC_FAILURE_MESSAGE = "Enrollment failed"


class EnrollmentError(Exception):
    status_code: int = 500
    public_message: str = GENERIC_FAILURE_MESSAGE

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.public_message
        super().__init__(self.detail)


class ValidationError(EnrollmentError):
    """Malformed caller input; the message is shown verbatim."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.public_message = detail


class NotFoundError(EnrollmentError):
    """No pending device matches the token (never existed or already consumed)."""

    status_code = 400
    public_message = INVALID_TOKEN_MESSAGE


class ExpiredError(EnrollmentError):
    """The pending device exists but its enrollment window has passed."""

    status_code = 400
    public_message = INVALID_TOKEN_MESSAGE


class DeviceNotFoundError(EnrollmentError):
    status_code = 404
    public_message = "Device not found"


class ConfigurationError(EnrollmentError):
    """No usable pre-authorization key for the tenant."""

    status_code = 400
    public_message = MISSING_KEY_MESSAGE


class PermissionDeniedError(EnrollmentError):
    status_code = 403
    public_message = "Not allowed"


class UpstreamError(EnrollmentError):
    """The mesh provider answered with a failure; ``detail`` holds its raw text."""

    status_code = 500

    def __init__(self, detail: str | None = None, status: int | None = None) -> None:
        super().__init__(detail)
        self.status = status


class UpstreamAuthError(UpstreamError):
    """Provider credentials are unset or were rejected."""


class PersistenceError(EnrollmentError):
    status_code = 500


class AuthenticationError(EnrollmentError):
    """Missing or unknown bearer token."""

    status_code = 401
    public_message = "Unauthorized"
