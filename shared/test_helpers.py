"""
Test helper functions and factory methods for the validation gate.
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Set

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

SANDBOX_ISSUER = "https://sandbox.cds-hooks.org"
SANDBOX_JKU = "https://sandbox.cds-hooks.org/.well-known/jwks.json"
SERVICE_AUDIENCE = "https://cds.example.org/cds-services/patient-greeting"


@dataclass
class SigningKeyPair:
    """RSA key pair with its public JWK."""

    kid: str
    private_pem: str
    public_jwk: Dict[str, Any]
    algorithm: str = "RS256"


def generate_signing_key(kid: str, algorithm: str = "RS256") -> SigningKeyPair:
    """Generate a fresh RSA signing key."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")

    public_jwk = jwk.construct(private_pem, algorithm).public_key().to_dict()
    public_jwk.update({"kid": kid, "use": "sig", "alg": algorithm})
    return SigningKeyPair(kid=kid, private_pem=private_pem, public_jwk=public_jwk, algorithm=algorithm)


def jwks_document(*keys: SigningKeyPair) -> Dict[str, Any]:
    """Key set document publishing the given keys."""
    return {"keys": [dict(key.public_jwk) for key in keys]}


class MockTokenGenerator:
    """Generate signed JWTs for testing."""

    def __init__(self, key: SigningKeyPair, issuer: str = SANDBOX_ISSUER, jku: Optional[str] = SANDBOX_JKU):
        self.key = key
        self.issuer = issuer
        self.jku = jku

    def generate_token(
        self,
        audience: Any = SERVICE_AUDIENCE,
        expires_in: int = 300,
        not_before: Optional[int] = None,
        kid: Optional[str] = None,
        **extra_claims: Any,
    ) -> str:
        """Sign a token; a negative ``expires_in`` yields an expired token."""
        now = int(time.time())
        claims: Dict[str, Any] = {
            "iss": self.issuer,
            "sub": "cds-client",
            "iat": now,
            "exp": now + expires_in,
            "jti": f"jti-{now}",
        }
        if audience is not None:
            claims["aud"] = audience
        if not_before is not None:
            claims["nbf"] = not_before
        claims.update(extra_claims)

        headers: Dict[str, Any] = {"kid": kid or self.key.kid}
        if self.jku:
            headers["jku"] = self.jku
        return jwt.encode(claims, self.key.private_pem, algorithm=self.key.algorithm, headers=headers)

    def authorization(self, **kwargs: Any) -> str:
        return f"Bearer {self.generate_token(**kwargs)}"


@dataclass
class MockKeySetServer:
    """Serves key set documents through an httpx MockTransport.

    ``delay`` holds each response open so concurrent requests overlap.
    """

    documents: Dict[str, Any] = field(default_factory=dict)
    failing: Set[str] = field(default_factory=set)
    delay: float = 0.0
    calls: Counter = field(default_factory=Counter)

    def publish(self, url: str, *keys: SigningKeyPair) -> None:
        self.documents[url] = jwks_document(*keys)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls[url] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if url in self.failing:
            raise httpx.ConnectError("connection refused", request=request)
        if url not in self.documents:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=self.documents[url])

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def trust_entries(*overrides: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    """Whitelist records for the sandbox issuer, each updated by one override."""
    base = {
        "issuer": SANDBOX_ISSUER,
        "jku": SANDBOX_JKU,
        "tenant_id": "tenant-1",
        "route_tenant": "sandbox",
        "enabled": True,
    }
    return [dict(base, **override) for override in (overrides or ({},))]
