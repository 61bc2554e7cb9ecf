from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Sequence

from authcentral.logging import get_logger
from authcentral.service.errors import (
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
)
from authcentral.storage.common import BoundedStore, hash_token
from authcentral.storage.redis_cache import ttl_millis

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_ACCESS_TOKEN_TYPE = "access"
# 64 random bytes, hex encoded: 512 bits of entropy per refresh token
REFRESH_TOKEN_BYTES = 64


@dataclass
class AccessClaims:
    """Verified contents of an access token.

    ``sub`` is the only identity claim; tokens without it are rejected.
    """

    sub: str
    email: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    iat: int = 0
    exp: int = 0
    jti: str = ""

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass
class IssuedAccessToken:
    token: str
    claims: AccessClaims

    @property
    def expires_in(self) -> int:
        return self.claims.exp - self.claims.iat


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def _string_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        return None
    return list(value)


class TokenIssuer:
    """Mints HS256 access tokens and opaque, store-backed refresh tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        access_ttl_seconds: int,
        store: Optional[BoundedStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self._store = store
        self._clock = clock

    def issue_access_token(
        self,
        user_id: str,
        email: str,
        roles: Sequence[str],
        permissions: Sequence[str],
    ) -> IssuedAccessToken:
        iat = int(self._clock())
        claims = AccessClaims(
            sub=user_id,
            email=email,
            roles=sorted(set(roles)),
            permissions=sorted(set(permissions)),
            iat=iat,
            exp=iat + self.access_ttl_seconds,
            jti=str(uuid.uuid4()),
        )
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        payload = {
            "iss": self.issuer,
            "sub": claims.sub,
            "email": claims.email,
            "roles": claims.roles,
            "permissions": claims.permissions,
            "token_type": _ACCESS_TOKEN_TYPE,
            "jti": claims.jti,
            "iat": claims.iat,
            "exp": claims.exp,
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{_sign(self._secret, signing_input)}"
        return IssuedAccessToken(token=token, claims=claims)

    async def issue_refresh_token(self, user_id: str, expires_at: datetime) -> str:
        """Persist the hash of a fresh random token and hand back the raw value.

        The raw string is returned exactly once and is not recoverable from
        the store afterwards.
        """
        if self._store is None:
            raise RuntimeError("refresh tokens require a backing store")
        raw = secrets.token_hex(REFRESH_TOKEN_BYTES)
        await self._store.create_refresh_token(user_id, hash_token(raw), expires_at)
        return raw

    def refresh_expiry(self, ttl_seconds: int) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc) + timedelta(
            seconds=ttl_seconds
        )


class TokenVerifier:
    """Pure, local verification of access tokens.

    No store is consulted here; revocation is checked separately against the
    blacklist. Any service holding the shared secret can verify the same way.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self.issuer = issuer
        self._clock = clock

    def verify(self, token: str) -> AccessClaims:
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedTokenError("Invalid token")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise MalformedTokenError("Invalid token")
        if not isinstance(header, dict):
            raise MalformedTokenError("Invalid token")
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignatureError("Invalid token")

        expected_sig = _sign(self._secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignatureError("Invalid token")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("Invalid token")
        if not isinstance(payload, dict):
            raise MalformedTokenError("Invalid token")

        claims = self._claims_from_payload(payload)
        # No leeway: a blacklist entry lives exactly until exp.
        if claims.exp <= self._clock():
            raise TokenExpiredError("Token expired")
        return claims

    def remaining_ms(self, claims: AccessClaims) -> int:
        """Lifetime left on a verified token, measured on this verifier's clock."""
        return ttl_millis(claims.exp, now=self._clock())

    def _claims_from_payload(self, payload: dict[str, Any]) -> AccessClaims:
        if payload.get("token_type") != _ACCESS_TOKEN_TYPE:
            raise MalformedTokenError("Invalid token")
        if payload.get("iss") != self.issuer:
            raise MalformedTokenError("Invalid token")
        sub = payload.get("sub")
        email = payload.get("email")
        if not isinstance(sub, str) or not sub:
            raise MalformedTokenError("Invalid token", detail={"claim": "sub"})
        if not isinstance(email, str):
            raise MalformedTokenError("Invalid token", detail={"claim": "email"})
        roles = _string_list(payload.get("roles"))
        permissions = _string_list(payload.get("permissions"))
        if roles is None or permissions is None:
            raise MalformedTokenError("Invalid token", detail={"claim": "roles/permissions"})
        iat = payload.get("iat")
        exp = payload.get("exp")
        # bool is an int subclass; reject it explicitly
        for name, value in (("iat", iat), ("exp", exp)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise MalformedTokenError("Invalid token", detail={"claim": name})
        jti = payload.get("jti")
        if not isinstance(jti, str) or not jti:
            raise MalformedTokenError("Invalid token", detail={"claim": "jti"})
        return AccessClaims(
            sub=sub,
            email=email,
            roles=roles,
            permissions=permissions,
            iat=iat,
            exp=exp,
            jti=jti,
        )

