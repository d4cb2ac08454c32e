from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sessionguard.config import JWT_ALGORITHM, Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    BadSignatureError,
    InvalidClaimsError,
    MalformedTokenError,
    TokenExpiredError,
)
from sessionguard.storage.models import utcnow

logger = get_logger(__name__)

_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_in: int
    expires_at: datetime


@dataclass(frozen=True)
class AccessClaims:
    subject_id: str
    role: str
    issued_at: datetime
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _decode_json_segment(segment: str) -> Any:
    try:
        return json.loads(_decode_segment(segment))
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        raise MalformedTokenError() from exc


class AccessTokenCodec:
    """Stateless HS256 bearer tokens.

    The algorithm is pinned: a token whose header names anything other than
    HS256 is rejected before its signature is even computed.
    """

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_secret.encode()
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._ttl = timedelta(minutes=settings.access_token_ttl_minutes)

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self, subject_id: str, role: str, now: Optional[datetime] = None
    ) -> IssuedToken:
        issued_at = (now or utcnow()).replace(microsecond=0)
        expires_at = issued_at + self._ttl
        payload: dict[str, Any] = {
            "sub": subject_id,
            "role": role,
            "typ": _TOKEN_TYPE,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if self._issuer:
            payload["iss"] = self._issuer
        if self._audience:
            payload["aud"] = self._audience
        header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        signing_input = ".".join(
            _encode_segment(json.dumps(part, separators=(",", ":")).encode())
            for part in (header, payload)
        )
        return IssuedToken(
            token=f"{signing_input}.{self._sign(signing_input)}",
            expires_in=int(self._ttl.total_seconds()),
            expires_at=expires_at,
        )

    def verify(self, token: str, now: Optional[datetime] = None) -> AccessClaims:
        parts = token.split(".") if token else []
        if len(parts) != 3:
            raise MalformedTokenError()
        header_b64, payload_b64, sig_b64 = parts

        header = _decode_json_segment(header_b64)
        if not isinstance(header, dict):
            raise MalformedTokenError()
        if header.get("alg") != JWT_ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise BadSignatureError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise BadSignatureError()

        payload = _decode_json_segment(payload_b64)
        if not isinstance(payload, dict) or payload.get("typ") != _TOKEN_TYPE:
            raise MalformedTokenError()
        subject_id, role = payload.get("sub"), payload.get("role")
        if not isinstance(subject_id, str) or not isinstance(role, str):
            raise MalformedTokenError()
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError() from exc

        if self._issuer and payload.get("iss") != self._issuer:
            raise InvalidClaimsError()
        if self._audience:
            aud = payload.get("aud")
            if isinstance(aud, str):
                valid_aud = aud == self._audience
            elif isinstance(aud, list):
                valid_aud = self._audience in aud
            else:
                valid_aud = False
            if not valid_aud:
                raise InvalidClaimsError()

        current = (now or utcnow()).timestamp()
        if current >= exp_ts:
            raise TokenExpiredError()
        return AccessClaims(
            subject_id=subject_id,
            role=role,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
        )
