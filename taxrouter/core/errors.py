from __future__ import annotations


class TaxRouterError(Exception):
    """Base error for taxrouter."""

    status_code = 500
    code = "INTERNAL_ERROR"
    # Message safe to return to API clients; the exception text stays in logs.
    public_message = "Internal server error"


class ConfigError(TaxRouterError):
    """Missing or invalid process configuration."""

    code = "CONFIG_ERROR"


class TenantNotFound(TaxRouterError):
    """No active tenant connection record for the identifier."""

    status_code = 404
    code = "TENANT_NOT_FOUND"
    public_message = "Tenant not found"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class TenantInactive(TaxRouterError):
    """Tenant record exists but has been deactivated."""

    status_code = 404
    code = "TENANT_INACTIVE"
    public_message = "Tenant not found"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"tenant inactive: {tenant_id}")
        self.tenant_id = tenant_id


class CredentialUnavailable(TaxRouterError):
    """Stored tenant credential could not be unsealed."""

    code = "CREDENTIAL_UNAVAILABLE"


class ConnectFailed(TaxRouterError):
    """Opening or probing a tenant database handle failed."""

    code = "TENANT_CONNECT_FAILED"


class SecretUnavailable(TaxRouterError):
    """Secret reference could not be resolved; carries the reference, never the secret."""

    code = "SECRET_UNAVAILABLE"

    def __init__(self, reference: str, reason: str | None = None) -> None:
        message = f"secret unavailable: {reference}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.reference = reference


class AdapterUnavailable(TaxRouterError):
    """No adapter registered for the kind and no default to fall back to."""

    code = "ADAPTER_UNAVAILABLE"


class InvalidOrExpiredToken(TaxRouterError):
    """Presented token is unknown, revoked, or expired."""

    status_code = 401
    code = "INVALID_OR_EXPIRED_TOKEN"
    public_message = "Invalid or expired token"


class TokenNotFound(TaxRouterError):
    """Token identifier does not exist."""

    status_code = 401
    code = "TOKEN_NOT_FOUND"
    public_message = "Token not found"


class IllegalStateTransition(TaxRouterError):
    """Requested status change is not allowed from the current status."""

    status_code = 409
    code = "ILLEGAL_STATE_TRANSITION"
    public_message = "Status transition not allowed"

    def __init__(self, current: str | None, target: str) -> None:
        super().__init__(f"illegal transition {current} -> {target}")
        self.current = current
        self.target = target


class NotAuthenticated(TaxRouterError):
    """Missing or invalid caller identity."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"
    public_message = "Unauthorized"


class NotAuthorized(TaxRouterError):
    """Caller identity lacks the role or tenant access required."""

    status_code = 403
    code = "AUTH_FORBIDDEN"
    public_message = "Forbidden"


class MalformedInput(TaxRouterError):
    """Missing required field, bad identifier, or unknown enum value."""

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.public_message = message


class MalformedCiphertext(TaxRouterError):
    """Sealed value has the wrong prefix, is truncated, or fails authentication."""

    code = "CREDENTIAL_UNAVAILABLE"


class NotFound(TaxRouterError):
    """Entity missing inside a tenant database."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        super().__init__(f"{resource} not found: {resource_id}" if resource_id else f"{resource} not found")
        self.public_message = f"{resource.capitalize()} not found"
