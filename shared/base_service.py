"""
Base service class for validation gate services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import time

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from shared.config import GateSettings, get_settings
from shared.logging import configure_logging, get_logger, set_request_id, clear_context, request_id_var
from shared.metrics import get_metrics_collector
from shared.errors import GateException


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, settings: Optional[GateSettings] = None, **app_kwargs: Any):
        self.config = settings or get_settings()
        self.service_name = self.config.service_name
        self._start_time = time.time()

        configure_logging(self.service_name, self.config.log_level)
        self.logger = get_logger(self.service_name)
        self.metrics = get_metrics_collector(self.service_name)

        self.app = self._create_app(**app_kwargs)
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self, **app_kwargs: Any) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Validation gate - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
            **app_kwargs,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def add_request_context(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            start_time = time.time()

            try:
                response = await call_next(request)
            except Exception:
                clear_context()
                raise
            duration = time.time() - start_time

            self.metrics.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration=duration
            )
            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )

            response.headers["X-Request-ID"] = request_id
            clear_context()
            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            dependencies = await self._check_dependencies()
            return {
                "service": self.service_name,
                "status": "ok",
                "uptime_seconds": self._get_uptime(),
                "dependencies": dependencies,
                "version": "1.0.0",
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(GateException)
        async def gate_exception_handler(request: Request, exc: GateException):
            """Handle GateException."""
            self.logger.error(
                "Gate error",
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            return JSONResponse(
                status_code=400,
                content=exc.to_response(request_id_var.get()).model_dump()
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {}
                }
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
