"""
Signing key resolution.

Fetches JSON Web Key Sets from the key set location a trusted issuer
publishes, converts each usable entry into a verification key and caches
the result per location. A refresh is shared by every request waiting on
the same location.
"""

from .resolver import KeyCacheEntry, KeyResolver, VerificationKey, close_key_resolver, get_key_resolver

__all__ = [
    "KeyCacheEntry",
    "KeyResolver",
    "VerificationKey",
    "close_key_resolver",
    "get_key_resolver",
]
