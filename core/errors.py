"""
core/errors.py -- Gateway error taxonomy.

Every failure the gateway reports to a client is a GatewayError subclass.
Each class carries a stable machine-readable code and the HTTP status the
API layer renders it with (see the GatewayError handler in api/main.py),
so route handlers and services raise domain errors and never build
responses for failures themselves.

Layer rule: no imports from api/, auth/ or proxy/.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all errors surfaced to gateway clients."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Authentication / authorization
# ---------------------------------------------------------------------------


class AuthError(GatewayError):
    """Missing, expired or invalid session token."""

    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class ExpiredTokenError(AuthError):
    code = "token_expired"
    message = "Session token has expired."


class MalformedTokenError(AuthError):
    code = "token_malformed"
    message = "Session token could not be parsed."


class SignatureError(AuthError):
    code = "token_signature"
    message = "Session token signature is invalid."


class BadCredentialsError(AuthError):
    code = "bad_credentials"
    message = "Invalid username or password."


class ForbiddenError(GatewayError):
    """Authenticated, but the role does not permit the operation."""

    status_code = 403
    code = "forbidden"
    message = "Admin access required."


class RateLimitedError(GatewayError):
    """Source address is locked out after repeated login failures."""

    status_code = 429
    code = "rate_limited"
    message = "Too many failed login attempts. Try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class NotFoundError(GatewayError):
    status_code = 404
    code = "not_found"
    message = "Tenant not found."


class ConflictError(GatewayError):
    status_code = 409
    code = "conflict"
    message = "A tenant with that value already exists."


class InvalidRequestError(GatewayError):
    """Request is well-formed but violates a business rule."""

    status_code = 400
    code = "invalid_request"
    message = "The request could not be processed."

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Upstream / configuration
# ---------------------------------------------------------------------------


class UpstreamUnavailableError(GatewayError):
    """The upstream engine could not be reached or failed at transport level."""

    status_code = 502
    code = "upstream_unavailable"
    message = "Upstream engine is not responding."


class ConfigError(GatewayError):
    """Invalid sync interval or malformed tenant config document."""

    status_code = 422
    code = "config_error"
    message = "Configuration is invalid."


class InvalidIntervalError(ConfigError):
    code = "invalid_interval"
    message = "Sync interval must be a positive integer number of hours."
