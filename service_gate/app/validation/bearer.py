"""
Bearer token extraction and unverified JOSE parsing.
"""

from typing import Any, Dict, Optional, Tuple

from jose import jwt
from jose.exceptions import JWTError


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token of a ``Bearer`` authorization header, else None."""
    if not authorization:
        return None

    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None

    token = token.strip()
    return token or None


def read_unverified(token: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Decode header and claims without checking the signature.

    Raises JWTError when the token is not a decodable JWS.
    """
    header = jwt.get_unverified_header(token)
    claims = jwt.get_unverified_claims(token)
    if not isinstance(header, dict) or not isinstance(claims, dict):
        raise JWTError("Token header and claims must be JSON objects")
    return header, claims


def key_set_location_of(header: Dict[str, Any], claims: Dict[str, Any]) -> Optional[str]:
    """The ``jku`` a token declares, looked up in the header before the claims."""
    for source in (header, claims):
        value = source.get("jku")
        if isinstance(value, str) and value:
            return value
    return None
