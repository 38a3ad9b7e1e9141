"""HMAC-signed bearer tokens.

Token layout: ``bmdev.<urlsafe-b64 JSON payload>.<hex HMAC-SHA256>``.
The signature covers the raw JSON payload.  Payload claims:

* ``sub`` -- profile id of the caller
* ``tenant_id`` -- laundry id used for row-level security
* ``role`` -- platform role (``staff``, ``admin``, ``technician``, ``owner``, ``service``)
* ``iat`` / ``exp`` -- issue and expiry times (epoch seconds)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "bmdev."


class TokenConfig(BaseModel):
    """Signing configuration for :class:`TokenManager`."""

    jwt_secret: SecretStr
    token_ttl_seconds: int = 3600
    max_token_ttl_seconds: int = 86400
    issuer: str = "laundryflow"


class TokenClaims(BaseModel):
    """Validated token payload."""

    model_config = ConfigDict(extra="allow")

    sub: str
    tenant_id: str
    role: str | None = None
    iss: str = "laundryflow"
    iat: float = 0.0
    exp: float = 0.0
    jti: str | None = None
    scopes: list[str] = []
    identity_kind: str = "user"


class TokenManager:
    """Issue and validate HMAC-signed bearer tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._key = config.jwt_secret.get_secret_value().encode("utf-8")

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._key, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        sub: str,
        tenant_id: str,
        *,
        role: str = "staff",
        ttl_seconds: int | None = None,
        identity_kind: str = "user",
    ) -> str:
        """Return a signed token for *sub* in *tenant_id*."""
        ttl = min(ttl_seconds or self._config.token_ttl_seconds, self._config.max_token_ttl_seconds)
        now = time.time()
        payload: dict[str, Any] = {
            "sub": sub,
            "tenant_id": tenant_id,
            "role": role,
            "iss": self._config.issuer,
            "iat": now,
            "exp": now + ttl,
            "jti": uuid.uuid4().hex,
            "scopes": ["read", "write"],
            "identity_kind": identity_kind,
        }
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify signature and expiry and return the claims.

        Raises
        ------
        PermissionError
            If the token is malformed, tampered with or expired.
        """
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("unsupported token format")

        try:
            encoded, signature = token[len(TOKEN_PREFIX) :].rsplit(".", 1)
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (ValueError, binascii.Error, UnicodeDecodeError):
            raise PermissionError("malformed token")

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("signature mismatch")

        try:
            claims = TokenClaims.model_validate(json.loads(payload_json))
        except (ValueError, ValidationError):
            raise PermissionError("malformed claims")

        if claims.exp and claims.exp < time.time():
            raise PermissionError("token expired")

        return claims
