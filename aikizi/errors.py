# aikizi/errors.py
"""
Taxonomía de errores del servicio.

Cada error lleva un `code` estable (lo lee el cliente) y un `status` HTTP.
Los handlers de Flask los convierten en {"ok": false, "error", "code"}.
"""

from __future__ import annotations

PREVIEW_CHARS = 200


class ServiceError(RuntimeError):
    code = "INTERNAL_ERROR"
    status = 500
    message = "Internal error."

    def __init__(self, message: str | None = None, code: str | None = None, status: int | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        if code:
            self.code = code
        if status:
            self.status = status

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message, "code": self.code}


# ---------------------------------------------------------
# AUTH
# ---------------------------------------------------------
class Unauthenticated(ServiceError):
    code = "UNAUTHORIZED"
    status = 401
    message = "Authentication failed."


class NoCredential(Unauthenticated):
    code = "NO_CREDENTIAL"
    message = "Authentication required."


class MalformedCredential(Unauthenticated):
    code = "MALFORMED_TOKEN"
    message = "Invalid authentication token."


class ExpiredCredential(Unauthenticated):
    code = "TOKEN_EXPIRED"
    message = "Token has expired. Please sign in again."


class NotYetValidCredential(Unauthenticated):
    code = "TOKEN_NOT_YET_VALID"
    message = "Token is not yet valid. Please try again shortly."


class UnknownSigningKey(Unauthenticated):
    code = "UNKNOWN_SIGNING_KEY"
    message = "Token was signed with an unknown key."


class InvalidSignature(Unauthenticated):
    code = "INVALID_SIGNATURE"
    message = "Invalid authentication token."


class Forbidden(ServiceError):
    code = "FORBIDDEN"
    status = 403
    message = "You do not have permission to do this."


class AccountNotFound(ServiceError):
    code = "ACCOUNT_NOT_FOUND"
    status = 404
    message = "Account not provisioned. Call /account/ensure first."


class ConfigurationError(ServiceError):
    code = "SERVER_CONFIG_ERROR"
    status = 500
    message = "Service is not configured correctly."


# ---------------------------------------------------------
# PETICIÓN / RECURSOS
# ---------------------------------------------------------
class NotFound(ServiceError):
    code = "NOT_FOUND"
    status = 404
    message = "Not found."


class InvalidInput(ServiceError):
    code = "INVALID_INPUT"
    status = 422
    message = "Invalid input."


# ---------------------------------------------------------
# LEDGER
# ---------------------------------------------------------
class InsufficientTokens(ServiceError):
    """Resultado de negocio esperado, no un defecto."""

    code = "INSUFFICIENT_TOKENS"
    status = 402
    message = "Not enough tokens. Upgrade your plan or buy more tokens."


# ---------------------------------------------------------
# PROVEEDORES IA
# ---------------------------------------------------------
class ProviderError(ServiceError):
    code = "PROVIDER_ERROR"
    status = 502
    message = "The AI provider failed. Please try again."

    def __init__(self, detail: str = "", message: str | None = None):
        super().__init__(message)
        # detalle técnico para logs; nunca se envía al cliente
        self.detail = detail


class ProviderUnavailable(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    message = "The AI provider is unavailable. Please try again."


class ProviderTimeout(ProviderError):
    code = "PROVIDER_TIMEOUT"
    status = 504
    message = "Decode timed out. Please try again."


class ProviderCanceled(ProviderTimeout):
    """La señal de cancelación abortó la llamada en curso."""

    code = "CANCELED"
    message = "Decode was canceled."


class ProviderRejected(ProviderError):
    code = "PROVIDER_REJECTED"
    message = "The AI provider rejected the image."


class EmptyResponse(ProviderError):
    code = "EMPTY_RESPONSE"
    message = "The AI provider returned an empty response. Please try again."


class UnparsableResponse(ServiceError):
    code = "UNPARSABLE_RESPONSE"
    status = 502
    message = "Could not read the AI response. Please try again."

    def __init__(self, raw_text: str = "", reason: str = ""):
        super().__init__()
        self.reason = reason
        # vista previa acotada, nunca el payload completo
        self.preview = (raw_text or "")[:PREVIEW_CHARS]


# ---------------------------------------------------------
# MÁQUINA DE ESTADOS
# ---------------------------------------------------------
class InvalidTransition(ServiceError):
    code = "INVALID_TRANSITION"
    status = 500
    message = "Invalid job state transition."
