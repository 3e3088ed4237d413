from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from usergate.config import TOKEN_TTL_SECONDS
from usergate.logging import get_logger
from usergate.service.errors import (
    InvalidSignatureError,
    MalformedCredentialError,
    MissingCredentialError,
    TokenExpiredError,
)
from usergate.storage.models import ROLES, User

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
_PRINCIPAL_FIELDS = ("id", "name", "email", "role")


@dataclass(frozen=True)
class Principal:
    """Identity and role decoded from a verified token, valid for one request."""

    id: str
    name: str
    email: str
    role: str

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(id=user.id, name=user.name, email=user.email, role=user.role)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    issued_at: int
    expires_at: int


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not header or not header.strip():
        raise MissingCredentialError()
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise MalformedCredentialError()
    return token


class TokenService:
    """Issues and verifies stateless HS256 tokens carrying a Principal.

    Nothing is stored server-side; a token is valid while its signature
    matches the signing secret and the clock is before ``exp``.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, principal: Principal) -> IssuedToken:
        issued_at = int(self._clock())
        expires_at = issued_at + self.ttl_seconds
        payload: dict[str, Any] = {**asdict(principal), "iat": issued_at, "exp": expires_at}
        header_enc = self._encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(token=token, issued_at=issued_at, expires_at=expires_at)

    def verify(self, token: str) -> Principal:
        """Decode ``token`` or raise the matching authentication error.

        Expiry is checked before the signature, so a token past ``exp`` is
        always reported as expired whatever its signature.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignatureError()

        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("token_segment_decode_failed")
            raise InvalidSignatureError()
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise InvalidSignatureError()
        # Reject alg confusion before anything else is trusted
        if header.get("alg") != _HEADER["alg"]:
            logger.warning("token_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignatureError()

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidSignatureError()
        if self._clock() >= exp:
            raise TokenExpiredError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError()

        try:
            fields = {name: payload[name] for name in _PRINCIPAL_FIELDS}
        except KeyError:
            raise InvalidSignatureError()
        if not all(isinstance(value, str) for value in fields.values()):
            raise InvalidSignatureError()
        if fields["role"] not in ROLES:
            logger.warning("token_unknown_role", role=fields["role"])
            raise InvalidSignatureError()
        return Principal(**fields)

    def verify_header(self, authorization: Optional[str]) -> Principal:
        return self.verify(extract_bearer(authorization))
