"""
Shared utilities for the validation gate.

This package aggregates common building blocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Error taxonomy, exception types and responses
- base_service: FastAPI service scaffolding
- test_helpers: Signing keys, tokens and mock key set endpoints for tests

Do not import from service packages into shared/.
"""
