"""
Validation gate package.

Wraps request validators as pipeline stages that either annotate the
request context and continue, or halt with a structured error:

- app.gate: Gate factory, pipeline driver and the upstream whitelist stage.
- app.context: Request-scoped context and whitelist entries.
- app.results: ValidationOk / ValidationErr and verified token claims.
- app.validation: Trust check and token verifier validators.
- app.jwks: Signing key resolution with a shared per-location cache.
- app.main: FastAPI service serving CDS endpoints behind the gates.
"""

from .context import PipelineContext, TrustEntry
from .gate import Pipeline, Validator, attach_whitelist, validation_gate
from .results import DecodedToken, ValidationErr, ValidationOk, ValidationResult

__all__ = [
    "DecodedToken",
    "Pipeline",
    "PipelineContext",
    "TrustEntry",
    "ValidationErr",
    "ValidationOk",
    "ValidationResult",
    "Validator",
    "attach_whitelist",
    "validation_gate",
]
