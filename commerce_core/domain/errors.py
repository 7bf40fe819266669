"""Error taxonomy shared by every component of the order/payment core.

Each class carries a stable machine-readable `code`; the API layer maps the
class to an HTTP status. Nothing below the API layer raises HTTPException.
"""


class CommerceError(Exception):
    code = "COMMERCE_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(CommerceError):
    code = "VALIDATION_ERROR"


class NotFoundError(CommerceError):
    code = "NOT_FOUND"


class AuthorizationError(CommerceError):
    code = "ACCESS_DENIED"


class InvalidTransition(CommerceError):
    code = "INVALID_TRANSITION"


class ConflictError(CommerceError):
    code = "CONFLICT"


class PaymentGatewayError(CommerceError):
    """Gateway call failed. `ambiguous` means the provider may still have acted."""
    code = "GATEWAY_ERROR"

    def __init__(self, message: str, code: str | None = None, ambiguous: bool = False):
        super().__init__(message, code)
        self.ambiguous = ambiguous


GatewayError = PaymentGatewayError


class WebhookSignatureError(ValidationError):
    code = "INVALID_SIGNATURE"
