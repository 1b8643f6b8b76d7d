from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from storefront_auth.logging import get_logger
from storefront_auth.storage.models import Account

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class InvalidTokenError(Exception):
    """Raised for every token verification failure.

    The reason is logged at debug level but never carried on the exception,
    so callers cannot branch on (or leak) why a token was rejected.
    """

    def __init__(self) -> None:
        super().__init__("invalid token")


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    email: str
    role: str
    token_type: str
    jti: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class TokenIssuer:
    """HS256 access/refresh token issuance.

    Access and refresh tokens are signed with different secrets, so a leaked
    refresh secret cannot mint access tokens and vice versa.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens require distinct secrets")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self._ttls = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}
        self.issuer = issuer
        self.audience = audience
        self._leeway = leeway_seconds
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttls[REFRESH]

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, token_type: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _issue(self, token_type: str, account: Account) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account.id,
            "email": account.email,
            "role": account.role,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self._ttls[token_type],
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(token_type, signing_input)}"

    def issue_access_token(self, account: Account) -> str:
        return self._issue(ACCESS, account)

    def issue_refresh_token(self, account: Account) -> str:
        return self._issue(REFRESH, account)

    def issue_pair(self, account: Account) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(account),
            refresh_token=self.issue_refresh_token(account),
            expires_in=self._ttls[ACCESS],
        )

    def _reject(self, reason: str, **context: Any) -> InvalidTokenError:
        logger.debug("token_rejected", reason=reason, **context)
        return InvalidTokenError()

    def verify(self, token: Optional[str], token_type: str) -> TokenClaims:
        """Validate ``token`` as ``token_type`` and return its claims.

        Raises:
            InvalidTokenError: malformed, wrong algorithm, bad signature, wrong
                token class, issuer or audience, or expired.
        """
        if token_type not in self._secrets:
            raise ValueError(f"unknown token type: {token_type}")
        if not token or not isinstance(token, str):
            raise self._reject("missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise self._reject("malformed") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise self._reject("header_decode_failed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise self._reject("invalid_algorithm")

        expected_sig = self._sign(token_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise self._reject("signature_mismatch", expected_class=token_type)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise self._reject("payload_decode_failed") from None
        if not isinstance(payload, dict):
            raise self._reject("payload_not_object")
        if payload.get("token_type") != token_type:
            raise self._reject("wrong_token_class")
        if payload.get("iss") != self.issuer:
            raise self._reject("issuer_mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise self._reject("audience_mismatch")

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise self._reject("expiry_missing") from None
        if exp + self._leeway <= self._clock():
            raise self._reject("expired", exp=exp)

        sub = payload.get("sub")
        jti = payload.get("jti")
        if not sub or not jti:
            raise self._reject("claims_missing")
        return TokenClaims(
            account_id=str(sub),
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or ""),
            token_type=token_type,
            jti=str(jti),
            issued_at=iat,
            expires_at=exp,
        )

    def remaining_lifetime(self, claims: TokenClaims) -> int:
        return max(0, int(claims.expires_at - self._clock()))
