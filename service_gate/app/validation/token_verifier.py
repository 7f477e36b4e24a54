"""
Token verifier: signature, time claims and audience of a bearer token.
"""

from typing import Any, Dict, List, Mapping, Optional

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from shared.errors import ErrorKind, KeyResolutionError
from shared.logging import get_logger
from ..context import PipelineContext
from ..jwks.resolver import KeyResolver, get_key_resolver
from ..results import DecodedToken, ValidationErr, ValidationOk, ValidationResult
from .bearer import extract_bearer

logger = get_logger("gate.token_verifier")

# Audience and issuer are compared after decoding so each failure maps to its own kind.
_DECODE_OPTIONS: Dict[str, Any] = {
    "verify_signature": True,
    "verify_exp": True,
    "verify_nbf": True,
    "verify_iat": True,
    "verify_aud": False,
    "verify_iss": False,
}


def _audiences(claims: Mapping[str, Any]) -> List[str]:
    aud = claims.get("aud")
    if isinstance(aud, str):
        return [aud]
    if isinstance(aud, list):
        return [item for item in aud if isinstance(item, str)]
    return []


class TokenVerifier:
    """Validator checking a bearer token against its issuer's key set.

    Options read: ``authorization``, ``key_set_location``, ``audience``,
    ``issuer``, ``leeway``, ``docs_url`` and ``context``. Without an explicit
    key set location or issuer, the whitelist item matched by an earlier
    trust check supplies them; the audience falls back to the context's.

    A signature that fails against a key served from cache is retried once
    after invalidating that key set, which covers key rotation at the issuer.
    A kid absent from a cached key set costs one refetch before KeyNotFound;
    a kid absent from a set fetched during this call fails without another fetch.
    """

    name = "token_verifier"

    def __init__(
        self,
        resolver: Optional[KeyResolver] = None,
        *,
        leeway: int = 0,
        docs_url: Optional[str] = None,
    ) -> None:
        self._resolver = resolver
        self.leeway = leeway
        self.docs_url = docs_url

    @property
    def resolver(self) -> KeyResolver:
        return self._resolver or get_key_resolver()

    async def invoke(self, options: Mapping[str, Any]) -> ValidationResult:
        context: Optional[PipelineContext] = options.get("context")
        docs_url = options.get("docs_url", self.docs_url)

        def fail(kind: ErrorKind, detail: str) -> ValidationErr:
            logger.warning("Token rejected", kind=kind.value, detail=detail)
            return ValidationErr(kind, detail, docs_url)

        authorization = options.get("authorization")
        if authorization is None and context is not None:
            authorization = context.authorization
        token = extract_bearer(authorization)
        if token is None:
            return fail(ErrorKind.MISSING_CREDENTIAL, "Authorization header must carry a Bearer token")

        entry = context.trusted_entry() if context is not None else None
        key_set_location = options.get("key_set_location") or (entry.key_set_location if entry else None)
        if not key_set_location:
            return fail(ErrorKind.UNTRUSTED_ISSUER, "No trusted key set location for this token")

        issuer = options.get("issuer") or (entry.issuer if entry else None)
        audience = options.get("audience") or (context.audience if context is not None else None)
        if not audience:
            return fail(ErrorKind.INTERNAL_VALIDATOR_FAULT, "No expected audience configured")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            return fail(ErrorKind.MALFORMED_TOKEN, f"Bearer token is not a valid JWT: {exc}")

        key_id = header.get("kid")
        if not isinstance(key_id, str) or not key_id:
            return fail(ErrorKind.MALFORMED_TOKEN, "Token header does not declare a key id (kid)")

        options_for_decode = dict(_DECODE_OPTIONS, leeway=options.get("leeway", self.leeway))
        resolver = self.resolver
        attempts = 2 if resolver.is_cached(key_set_location, key_id) else 1

        for attempt in range(1, attempts + 1):
            try:
                key = await resolver.resolve(key_set_location, key_id)
                claims = jwt.decode(
                    token,
                    key.key,
                    algorithms=[key.algorithm],
                    options=options_for_decode,
                )
                break
            except KeyResolutionError as exc:
                return fail(exc.kind, exc.message)
            except ExpiredSignatureError:
                return fail(ErrorKind.TOKEN_EXPIRED, "Token has expired")
            except JWTClaimsError as exc:
                if "nbf" in str(exc):
                    return fail(ErrorKind.TOKEN_NOT_YET_VALID, "Token is not valid yet")
                return fail(ErrorKind.MALFORMED_TOKEN, f"Token claims are malformed: {exc}")
            except JWTError as exc:
                if attempt < attempts:
                    # Cached key may predate a rotation at the issuer.
                    logger.info("Signature mismatch with cached key, refetching", kid=key_id, jku=key_set_location)
                    resolver.invalidate(key_set_location)
                    continue
                return fail(ErrorKind.INVALID_SIGNATURE, f"Token signature could not be verified: {exc}")

        if audience not in _audiences(claims):
            return fail(ErrorKind.AUDIENCE_MISMATCH, f"Token is not intended for audience '{audience}'")

        if issuer and claims.get("iss") != issuer:
            return fail(ErrorKind.UNTRUSTED_ISSUER, f"Token issuer does not match trusted issuer '{issuer}'")

        decoded = DecodedToken.from_claims(header, claims)
        logger.info("Token verified", sub=decoded.subject, iss=decoded.issuer, kid=key_id)
        return ValidationOk({"token": decoded})
