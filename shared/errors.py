"""
Shared error handling for the validation gate.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Failure taxonomy surfaced by validators and the gate."""

    MISSING_CREDENTIAL = "MissingCredential"
    MALFORMED_TOKEN = "MalformedToken"
    UNTRUSTED_ISSUER = "UntrustedIssuer"
    INVALID_SIGNATURE = "InvalidSignature"
    TOKEN_EXPIRED = "TokenExpired"
    TOKEN_NOT_YET_VALID = "TokenNotYetValid"
    AUDIENCE_MISMATCH = "AudienceMismatch"
    KEY_NOT_FOUND = "KeyNotFound"
    FETCH_FAILED = "FetchFailed"
    INTERNAL_VALIDATOR_FAULT = "InternalValidatorFault"


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class GateException(Exception):
    """Base exception for validation gate components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class KeyResolutionError(GateException):
    """Signing key could not be resolved from a key set location."""

    def __init__(self, kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        super().__init__(kind.value, message, details)


class ValidationFailedError(GateException):
    """A validation gate halted the request pipeline."""

    def __init__(self, kind: ErrorKind, message: str, docs_url: Optional[str] = None):
        self.kind = kind
        self.docs_url = docs_url
        details = {"docs_url": docs_url} if docs_url else {}
        super().__init__(kind.value, message, details)
