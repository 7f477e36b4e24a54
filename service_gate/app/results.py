"""
Validation result types shared by every validator and the gate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence, Union

from shared.errors import ErrorKind


@dataclass(frozen=True)
class ValidationOk:
    """Successful validation carrying validator-specific payload."""

    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ValidationErr:
    """Failed validation. Halts the pipeline."""

    kind: ErrorKind
    detail: str
    docs_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return False


ValidationResult = Union[ValidationOk, ValidationErr]


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True)
class DecodedToken:
    """Claims of a bearer token whose signature has been verified.

    Only the token verifier builds these; never construct one from a token
    that has not passed signature verification.
    """

    issuer: str
    audience: Union[str, Sequence[str]]
    key_id: str
    subject: Optional[str]
    issued_at: Optional[datetime]
    expires_at: Optional[datetime]
    claims: Mapping[str, Any]

    @classmethod
    def from_claims(cls, header: Mapping[str, Any], claims: Mapping[str, Any]) -> "DecodedToken":
        audience = claims.get("aud", "")
        if isinstance(audience, list):
            audience = tuple(audience)
        return cls(
            issuer=claims.get("iss", ""),
            audience=audience,
            key_id=header.get("kid", ""),
            subject=claims.get("sub"),
            issued_at=_timestamp(claims.get("iat")),
            expires_at=_timestamp(claims.get("exp")),
            claims=dict(claims),
        )
