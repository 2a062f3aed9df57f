from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from tenantauth.config import SigningKey
from tenantauth.logging import get_logger
from tenantauth.service.result import ErrorKind, Result
from tenantauth.storage.models import Principal, TokenClaims

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("tenantId", "userId", "username", "iat", "exp")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def hash_token(token: str) -> str:
    """SHA-256 of the token, base64url without padding.

    The hash is the join key for revocation, the validation cache and logs;
    the raw token is never stored.
    """
    return _encode_segment(hashlib.sha256(token.encode("utf-8")).digest())


class TokenIssuer:
    """Issues and verifies HS256 session tokens for tenant principals."""

    def __init__(self, key: SigningKey, *, clock: Callable[[], float] = time.time) -> None:
        if key.algorithm != "HS256":
            raise ValueError(f"unsupported signing algorithm: {key.algorithm}")
        self._key = key
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._key.token_ttl_seconds

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key.secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, principal: Principal) -> str:
        now = int(self._clock())
        payload = {
            "tenantId": principal.tenant_id,
            "userId": principal.user_id,
            "username": principal.username,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self._key.token_ttl_seconds,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 so a forged header cannot pick the algorithm
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        try:
            if not hmac.compare_digest(expected_sig, sig_b64):
                return None
        except TypeError:
            # compare_digest refuses non-ASCII str input
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None

    def parse(self, token: str) -> Result[TokenClaims]:
        """Verify signature, expiry and claim presence.

        Every failure collapses to INVALID_TOKEN; the reason is only logged.
        """
        payload = self._decode(token)
        if payload is None:
            return Result.failure(ErrorKind.INVALID_TOKEN)
        if any(payload.get(name) in (None, "") for name in _REQUIRED_CLAIMS):
            logger.info("jwt_missing_claims")
            return Result.failure(ErrorKind.INVALID_TOKEN)
        try:
            user_id = int(payload["userId"])
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (TypeError, ValueError):
            return Result.failure(ErrorKind.INVALID_TOKEN)
        if expires_at <= self._clock():
            logger.info("jwt_expired", expired_at=expires_at)
            return Result.failure(ErrorKind.INVALID_TOKEN)
        principal = Principal(
            tenant_id=str(payload["tenantId"]),
            user_id=user_id,
            username=str(payload["username"]),
        )
        return Result.success(
            TokenClaims(
                principal=principal,
                issued_at=issued_at,
                expires_at=expires_at,
                jti=str(payload.get("jti") or ""),
            )
        )

    def validate(self, token: str) -> Result[Principal]:
        parsed = self.parse(token)
        if not parsed.ok:
            return Result.failure(parsed.error, parsed.message)
        return Result.success(parsed.value.principal)

    def remaining_ttl(self, claims: TokenClaims) -> int:
        return int(claims.expires_at - self._clock())
