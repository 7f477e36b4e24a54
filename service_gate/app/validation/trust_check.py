"""
Trust check: is the token's claimed issuer on the caller's whitelist?

Runs on unverified claims and never touches the network, so an untrusted
issuer is rejected before any key set is fetched.
"""

from typing import Any, Iterable, Mapping, Optional

from jose.exceptions import JWTError

from shared.errors import ErrorKind
from shared.logging import get_logger
from ..context import PipelineContext, TrustEntry
from ..results import ValidationErr, ValidationOk, ValidationResult
from .bearer import extract_bearer, key_set_location_of, read_unverified

logger = get_logger("gate.trust_check")


def find_trusted(
    whitelist: Iterable[Any],
    issuer: str,
    key_set_location: Optional[str],
) -> Optional[TrustEntry]:
    """First enabled entry for ``issuer``.

    When the token names a key set location the entry must match it too;
    otherwise the entry's own location is the one to use.
    """
    for item in whitelist:
        entry = item if isinstance(item, TrustEntry) else TrustEntry.model_validate(item)
        if not entry.enabled or entry.issuer != issuer:
            continue
        if key_set_location is not None and entry.key_set_location != key_set_location:
            continue
        return entry
    return None


class TrustCheck:
    """Validator matching a bearer token's issuer against a whitelist.

    Options read: ``authorization``, ``whitelist``, ``docs_url`` and
    ``context``; the first two fall back to the context's fields.
    """

    name = "trust_check"

    def __init__(self, docs_url: Optional[str] = None) -> None:
        self.docs_url = docs_url

    def invoke(self, options: Mapping[str, Any]) -> ValidationResult:
        context: Optional[PipelineContext] = options.get("context")
        docs_url = options.get("docs_url", self.docs_url)

        authorization = options.get("authorization")
        if authorization is None and context is not None:
            authorization = context.authorization

        token = extract_bearer(authorization)
        if token is None:
            return ValidationErr(
                ErrorKind.MISSING_CREDENTIAL,
                "Authorization header must carry a Bearer token",
                docs_url,
            )

        try:
            header, claims = read_unverified(token)
        except JWTError as exc:
            logger.warning("Bearer token could not be decoded", error=str(exc))
            return ValidationErr(ErrorKind.MALFORMED_TOKEN, f"Bearer token is not a valid JWT: {exc}", docs_url)

        issuer = claims.get("iss")
        if not isinstance(issuer, str) or not issuer:
            return ValidationErr(ErrorKind.UNTRUSTED_ISSUER, "Token does not name an issuer", docs_url)

        whitelist = options.get("whitelist")
        if whitelist is None:
            whitelist = context.whitelist if context is not None else ()

        key_set_location = key_set_location_of(header, claims)
        entry = find_trusted(whitelist, issuer, key_set_location)
        if entry is None:
            logger.warning("Issuer not trusted", iss=issuer, jku=key_set_location)
            return ValidationErr(
                ErrorKind.UNTRUSTED_ISSUER,
                f"Issuer '{issuer}' with key set '{key_set_location}' is not on the whitelist",
                docs_url,
            )

        logger.info("Issuer trusted", iss=issuer, tenant_id=entry.tenant_id)
        return ValidationOk({"whitelist_item": entry, "token": claims, "header": header})
