"""Bearer-token authentication for the billing API.

Probes and API docs are public.  Every other request must present an
``Authorization: Bearer bmdev...`` token signed with ``JWT_SECRET``.
Tokens without a role claim act as ``staff`` for users and ``service``
for scheduler identities.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import TokenClaims, TokenConfig, TokenManager

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = frozenset({"/api/v1/health", "/ready", "/openapi.json", "/favicon.ico"})
_PUBLIC_PREFIXES = ("/docs", "/redoc")


def _build_token_config() -> TokenConfig:
    """Read token settings from ``JWT_SECRET`` and the ``*_TTL_SECONDS`` variables.

    Outside production a missing secret is replaced by a random one, so
    tokens issued by this process die with it.
    """
    secret = os.environ.get("JWT_SECRET") or ""
    if not secret:
        if os.environ.get("API_PLATFORM_ENV", "dev").lower() == "production":
            raise RuntimeError("JWT_SECRET environment variable must be set in production.")
        logger.warning("JWT_SECRET not set; signing tokens with a throwaway per-process secret")
        secret = f"dev-{secrets.token_hex(32)}"

    return TokenConfig(
        jwt_secret=SecretStr(secret),
        token_ttl_seconds=int(os.environ.get("TOKEN_TTL_SECONDS", "3600")),
        max_token_ttl_seconds=int(os.environ.get("MAX_TOKEN_TTL_SECONDS", "86400")),
    )


def _is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES)


def _unauthorized(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _bearer_token(header: str | None) -> str | None:
    """Return the credential of a ``Bearer`` header, or ``None``."""
    scheme, _, credential = (header or "").strip().partition(" ")
    credential = credential.strip()
    if scheme.lower() != "bearer" or not credential:
        return None
    return credential


def _effective_role(claims: TokenClaims) -> str:
    if claims.role:
        return claims.role
    return "service" if claims.identity_kind == "service" else "staff"


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated calls and publish the caller's identity.

    Authenticated requests carry ``tenant_id`` (laundry), ``sub``
    (profile), ``scopes``, ``identity_kind`` and ``role`` on
    ``request.state``.  Expired tokens yield 403; every other failure
    yields 401.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._token_manager = TokenManager(_build_token_config())

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        header = request.headers.get("authorization")
        if header is None:
            return _unauthorized(401, "Missing Authorization header")
        token = _bearer_token(header)
        if token is None:
            return _unauthorized(401, "Authorization header must use Bearer scheme")

        try:
            claims = self._token_manager.validate_token(token)
        except PermissionError as exc:
            if "expired" in str(exc).lower():
                return _unauthorized(403, "Token has expired")
            logger.info("Rejected bearer token on %s: %s", request.url.path, exc)
            return _unauthorized(401, f"Invalid token: {exc}")

        state = request.state
        state.tenant_id = claims.tenant_id
        state.sub = claims.sub
        state.scopes = claims.scopes
        state.identity_kind = claims.identity_kind
        state.role = _effective_role(claims)
        return await call_next(request)
