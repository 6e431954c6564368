"""Error taxonomy shared by the control plane and the host agent.

Every error carries the HTTP status it renders as and a stable ``code``
string. The server installs one exception handler for ``ToolshedError``
that emits ``{"error": code, "detail": message}``; ``HostAgentClient``
maps those bodies back onto the same classes.
"""

from __future__ import annotations


class ToolshedError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.code.replace("_", " ")


class ProvisioningError(ToolshedError):
    status_code = 502
    code = "provisioning_failed"


class ResourceGoneError(ProvisioningError):
    """The cloud provider no longer knows the resource (treated as deleted)."""

    status_code = 404
    code = "resource_gone"


class CommunicationError(ToolshedError):
    status_code = 503
    code = "host_unreachable"


class AuthenticationError(ToolshedError):
    status_code = 401
    code = "unauthenticated"


class AuthorizationError(ToolshedError):
    """Denied. The message never says which link of the chain was missing."""

    status_code = 403
    code = "not_authorized"

    def __init__(self, message: str | None = None):
        super().__init__("not authorized")


class CredentialError(ToolshedError):
    status_code = 424
    code = "credential_unavailable"

    @classmethod
    def default_message(cls) -> str:
        return "reconnect the credential for this tool"


class ResourceConflictError(ToolshedError):
    status_code = 409
    code = "conflict"


class InvalidStateError(ToolshedError):
    status_code = 409
    code = "invalid_state"


class NotFoundError(ToolshedError):
    status_code = 404
    code = "not_found"


class SchemaValidationError(ToolshedError):
    status_code = 422
    code = "schema_validation_failed"


class ExecutionTimeoutError(ToolshedError):
    status_code = 504
    code = "execution_timeout"


_BY_CODE: dict[str, type[ToolshedError]] = {
    cls.code: cls
    for cls in (
        ProvisioningError,
        ResourceGoneError,
        CommunicationError,
        AuthenticationError,
        AuthorizationError,
        CredentialError,
        ResourceConflictError,
        InvalidStateError,
        NotFoundError,
        SchemaValidationError,
        ExecutionTimeoutError,
    )
}


def error_from_body(status_code: int, body: object) -> ToolshedError:
    """Rebuild a ToolshedError from a rendered error body."""
    code = body.get("error") if isinstance(body, dict) else None
    detail = body.get("detail") if isinstance(body, dict) else None
    cls = _BY_CODE.get(code or "")
    if cls is None:
        err = ToolshedError(str(detail or f"HTTP {status_code}"))
        err.status_code = status_code
        return err
    return cls(detail if isinstance(detail, str) else None)
