"""
Validation gate service: CDS service endpoints behind the gate pipeline.
"""

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from fastapi import Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import GateSettings
from shared.errors import ErrorKind, ValidationFailedError
from shared.logging import request_id_var, set_trust_context
from .context import PipelineContext, TrustEntry
from .gate import Pipeline, attach_whitelist, validation_gate
from .jwks.resolver import KeyResolver, close_key_resolver
from .results import ValidationErr
from .validation.token_verifier import TokenVerifier
from .validation.trust_check import TrustCheck

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.MISSING_CREDENTIAL: 401,
    ErrorKind.MALFORMED_TOKEN: 401,
    ErrorKind.INVALID_SIGNATURE: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_NOT_YET_VALID: 401,
    ErrorKind.AUDIENCE_MISMATCH: 401,
    ErrorKind.KEY_NOT_FOUND: 401,
    ErrorKind.UNTRUSTED_ISSUER: 403,
    ErrorKind.FETCH_FAILED: 502,
    ErrorKind.INTERNAL_VALIDATOR_FAULT: 500,
}


def load_whitelist(path: str) -> List[TrustEntry]:
    """Read trust entries from a JSON file holding a list of objects."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"Whitelist file {path} must contain a JSON list")
    return [TrustEntry.model_validate(item) for item in data]


async def raise_validation_failure(context: PipelineContext, error: ValidationErr) -> None:
    """Pipeline error handler handing a halted request to FastAPI's handlers."""
    raise ValidationFailedError(error.kind, error.detail, error.docs_url)


class GateService(BaseService):
    """Serves CDS services only to requests that pass the validation gates."""

    def __init__(
        self,
        settings: Optional[GateSettings] = None,
        *,
        resolver: Optional[KeyResolver] = None,
        whitelist: Optional[Sequence[Any]] = None,
        services: Optional[Sequence[Dict[str, Any]]] = None,
    ):
        super().__init__(settings, lifespan=self._lifespan)

        self._owns_resolver = resolver is None
        self.resolver = resolver or KeyResolver(
            cache_ttl=self.config.jwks_cache_ttl,
            fetch_timeout=self.config.jwks_fetch_timeout,
            metrics=self.metrics,
        )

        if whitelist is None and self.config.whitelist_file:
            whitelist = load_whitelist(self.config.whitelist_file)
        self.whitelist = [
            entry if isinstance(entry, TrustEntry) else TrustEntry.model_validate(entry)
            for entry in whitelist or ()
        ]
        self.services = list(services or [])

        docs_url = self.config.docs_url
        self.pipeline = Pipeline(
            [
                attach_whitelist(lambda context: self.whitelist),
                validation_gate("whitelist", TrustCheck(docs_url=docs_url)),
                validation_gate(
                    "token",
                    TokenVerifier(self.resolver, leeway=self.config.token_leeway, docs_url=docs_url),
                ),
            ],
            error_handler=raise_validation_failure,
        )

        self._setup_validation_handler()
        self._setup_gate_routes()

    @asynccontextmanager
    async def _lifespan(self, app):
        yield
        if self._owns_resolver:
            await self.resolver.close()
        await close_key_resolver()

    async def validate_request(self, request: Request) -> PipelineContext:
        """FastAPI dependency running the gate pipeline for one request."""
        context = PipelineContext(
            authorization=request.headers.get("Authorization"),
            audience=self.config.audience or str(request.url),
        )
        context = await self.pipeline.run(context)

        entry = context.trusted_entry()
        if entry is not None:
            set_trust_context(issuer=entry.issuer, tenant_id=entry.tenant_id)
        return context

    def _setup_validation_handler(self):
        """Map halted pipelines to HTTP responses."""

        @self.app.exception_handler(ValidationFailedError)
        async def validation_failed_handler(request: Request, exc: ValidationFailedError):
            status_code = STATUS_BY_KIND.get(exc.kind, 401)
            headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
            return JSONResponse(
                status_code=status_code,
                content=exc.to_response(request_id_var.get()).model_dump(),
                headers=headers,
            )

    def _setup_gate_routes(self):
        """Set up CDS service routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": self.service_name,
                "message": "Validation gate - CDS services",
                "version": "1.0.0"
            }

        @self.app.get("/cds-services")
        async def discovery():
            """CDS service discovery. Not protected."""
            return {"services": self.services}

        @self.app.post("/cds-services/{service_id}")
        async def invoke_service(service_id: str, context: PipelineContext = Depends(self.validate_request)):
            """Invoke a CDS service once the request has passed every gate."""
            if not any(service.get("id") == service_id for service in self.services):
                raise HTTPException(status_code=404, detail=f"Unknown CDS service '{service_id}'")

            token = context.get_result("token").payload["token"]
            entry = context.trusted_entry()
            return {
                "cards": [],
                "extension": {
                    "issuer": token.issuer,
                    "subject": token.subject,
                    "tenant_id": entry.tenant_id if entry else None,
                },
            }

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report trust list state."""
        enabled = [entry for entry in self.whitelist if entry.enabled]
        return {"whitelist": "ok" if enabled else "empty"}


def create_app(
    settings: Optional[GateSettings] = None,
    *,
    resolver: Optional[KeyResolver] = None,
    whitelist: Optional[Sequence[Any]] = None,
    services: Optional[Sequence[Dict[str, Any]]] = None,
):
    """Create FastAPI application."""
    service = GateService(settings, resolver=resolver, whitelist=whitelist, services=services)
    return service.app


if __name__ == "__main__":
    service = GateService()
    service.run()
