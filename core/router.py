"""
core/router.py -- Classify inbound request paths into gateway namespaces.

PathRouter is a pure decision function: given a request path and the
caller's session claims (or None), it returns a RouteDecision describing
where the request belongs and what path to send upstream. It performs no
I/O except tenant lookups, and it never builds responses; api/ and proxy/
act on the decision.

Rules are an ordered list of (predicate, handler) pairs evaluated top-down,
first match wins:

  1. /dashboard...        -> dashboard (static bundle, never proxied)
  2. /api...              -> tenant_api (served by this process)
  3. /<secret>/...        -> tenant_secret_proxy, secret segment removed,
                             engine API origin, no token required
  4. anything else        -> public_frontend_proxy, prefixed with the
                             caller's current secret path, engine UI origin;
                             unauthenticated callers are redirected to login

Secret-path matching is an exact comparison of the whole first segment with
a stored value. A segment is only looked up if it is exactly 32 lowercase
hex characters; unknown or malformed segments fall through to rule 4.

Layer rule: no imports from api/, auth/ or proxy/. Tenant lookups go through
the TenantLookup protocol, which auth.store.UserStore satisfies.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

SECRET_PATH_RE = re.compile(r"^[0-9a-f]{32}$")

DASHBOARD_PREFIX = "/dashboard"
API_PREFIX = "/api"
LOGIN_PAGE = "/dashboard/"

# Tenant-API paths (after the /api prefix) reachable without a session.
PUBLIC_API_PATHS = frozenset(
    {
        "/v1/auth/login",
        "/v1/auth/logout",
        "/v1/health",
        "/v1/settings/public",
    }
)


class Namespace(str, Enum):
    dashboard = "dashboard"
    tenant_api = "tenant_api"
    tenant_secret_proxy = "tenant_secret_proxy"
    public_frontend_proxy = "public_frontend_proxy"


class Origin(str, Enum):
    api = "api"
    ui = "ui"


@dataclass(frozen=True)
class RouteDecision:
    """Where a request goes.

    origin is set only for the two proxied namespaces. redirect_to is set
    when the caller must be sent to the login page instead of being served.
    forwarded_prefix is the path segment removed before forwarding, passed
    upstream as X-Forwarded-Prefix.
    """

    namespace: Namespace
    rewritten_path: str
    requires_auth: bool
    origin: Optional[Origin] = None
    tenant_id: Optional[int] = None
    redirect_to: Optional[str] = None
    forwarded_prefix: Optional[str] = None

    @property
    def is_proxied(self) -> bool:
        return self.origin is not None and self.redirect_to is None


class _TenantRecord(Protocol):
    id: int | None
    secret_path: str


class _Claims(Protocol):
    tenant_id: int


class TenantLookup(Protocol):
    def get_by_secret_path(self, secret_path: str) -> _TenantRecord | None: ...

    def get_by_id(self, tenant_id: int) -> _TenantRecord | None: ...


def is_secret_path(segment: str) -> bool:
    """True if segment has the exact shape of a secret path (32 lowercase hex)."""
    return SECRET_PATH_RE.fullmatch(segment) is not None


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


class PathRouter:
    """First-match-wins path classifier.

    Usage:
        router = PathRouter(store)
        decision = router.classify("/0123...cdef/api/subs", claims=None)
    """

    def __init__(self, lookup: TenantLookup) -> None:
        self._lookup = lookup
        self._rules: list[tuple[Callable[[str], bool], Callable[[str, object], RouteDecision]]] = [
            (lambda path: _under(path, DASHBOARD_PREFIX), self._dashboard),
            (lambda path: _under(path, API_PREFIX), self._tenant_api),
            (self._matches_tenant_secret, self._tenant_secret),
            (lambda path: True, self._frontend),
        ]

    def classify(self, path: str, claims: _Claims | None = None) -> RouteDecision:
        if not path.startswith("/"):
            path = "/" + path
        for predicate, handler in self._rules:
            if predicate(path):
                return handler(path, claims)
        raise AssertionError("catch-all rule did not match")  # pragma: no cover

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    @staticmethod
    def _split_first_segment(path: str) -> tuple[str, str]:
        """'/abc/def/g' -> ('abc', '/def/g'); '/abc' -> ('abc', '/')."""
        _, _, rest = path.partition("/")
        segment, slash, remainder = rest.partition("/")
        return segment, "/" + remainder if slash else "/"

    def _matches_tenant_secret(self, path: str) -> bool:
        segment, _ = self._split_first_segment(path)
        return is_secret_path(segment) and self._lookup.get_by_secret_path(segment) is not None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _dashboard(self, path: str, claims) -> RouteDecision:
        return RouteDecision(Namespace.dashboard, path, requires_auth=False)

    def _tenant_api(self, path: str, claims) -> RouteDecision:
        stripped = path[len(API_PREFIX) :] or "/"
        return RouteDecision(
            Namespace.tenant_api,
            stripped,
            requires_auth=stripped not in PUBLIC_API_PATHS,
            tenant_id=claims.tenant_id if claims is not None else None,
        )

    def _tenant_secret(self, path: str, claims) -> RouteDecision:
        segment, remainder = self._split_first_segment(path)
        tenant = self._lookup.get_by_secret_path(segment)
        if tenant is None:
            # Reset between predicate and handler: the old path is dead.
            return self._frontend(path, claims)
        return RouteDecision(
            Namespace.tenant_secret_proxy,
            remainder,
            requires_auth=False,
            origin=Origin.api,
            tenant_id=tenant.id,
            forwarded_prefix="/" + segment,
        )

    def _frontend(self, path: str, claims) -> RouteDecision:
        tenant = self._lookup.get_by_id(claims.tenant_id) if claims is not None else None
        if tenant is None:
            return RouteDecision(
                Namespace.public_frontend_proxy,
                path,
                requires_auth=True,
                redirect_to=LOGIN_PAGE,
            )
        return RouteDecision(
            Namespace.public_frontend_proxy,
            "/" + tenant.secret_path + path,
            requires_auth=True,
            origin=Origin.ui,
            tenant_id=tenant.id,
        )
