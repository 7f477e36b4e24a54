"""
Integration tests for the full validation gate pipeline.
"""

import asyncio

import pytest

from shared.errors import ErrorKind
from shared.test_helpers import MockTokenGenerator, SANDBOX_ISSUER, SANDBOX_JKU, SERVICE_AUDIENCE, trust_entries
from service_gate.app.context import PipelineContext
from service_gate.app.gate import Pipeline, attach_whitelist, validation_gate
from service_gate.app.jwks.resolver import KeyResolver
from service_gate.app.results import ValidationErr
from service_gate.app.validation.token_verifier import TokenVerifier
from service_gate.app.validation.trust_check import TrustCheck


class TestValidationFlow:
    """Trust check followed by token verification, as a caller would chain them."""

    @pytest.fixture
    def resolver(self, key_server):
        return KeyResolver(client=key_server.client())

    def build_pipeline(self, resolver, whitelist, extra_stages=()):
        return Pipeline([
            attach_whitelist(whitelist),
            validation_gate("whitelist", TrustCheck()),
            validation_gate("token", TokenVerifier(resolver), audience=SERVICE_AUDIENCE),
            *extra_stages,
        ])

    @pytest.mark.asyncio
    async def test_trusted_and_valid_token_passes(self, resolver, token_generator):
        """Test that both results are attached for downstream handlers."""
        pipeline = self.build_pipeline(resolver, trust_entries({}))
        context = PipelineContext(authorization=token_generator.authorization())

        result = await pipeline.run(context)

        assert result is context
        assert context.get_result("whitelist").payload["whitelist_item"].issuer == SANDBOX_ISSUER
        assert context.get_result("token").payload["token"].subject == "cds-client"

    @pytest.mark.asyncio
    async def test_untrusted_issuer_never_fetches_keys(self, resolver, key_server, token_generator):
        """Test that the trust check rejects before any network call."""
        pipeline = self.build_pipeline(resolver, trust_entries({"enabled": False}))
        context = PipelineContext(authorization=token_generator.authorization())

        result = await pipeline.run(context)

        assert isinstance(result, ValidationErr)
        assert result.kind == ErrorKind.UNTRUSTED_ISSUER
        assert context.results == {}
        assert key_server.calls[SANDBOX_JKU] == 0

    @pytest.mark.asyncio
    async def test_expired_token_halts_after_trust_check(self, resolver, token_generator):
        """Test that the trust result stays while the token result is absent."""
        pipeline = self.build_pipeline(resolver, trust_entries({}))
        context = PipelineContext(authorization=token_generator.authorization(expires_in=-60))

        result = await pipeline.run(context)

        assert result.kind == ErrorKind.TOKEN_EXPIRED
        assert set(context.results) == {"whitelist"}

    @pytest.mark.asyncio
    async def test_custom_validator_fault_halts_pipeline(self, resolver, token_generator):
        """Test that a crashing caller-supplied stage is contained."""
        def tenant_route(options):
            raise KeyError("route_tenant")

        pipeline = self.build_pipeline(
            resolver,
            trust_entries({}),
            extra_stages=[validation_gate("tenant", tenant_route)],
        )
        context = PipelineContext(authorization=token_generator.authorization())

        result = await pipeline.run(context)

        assert result.kind == ErrorKind.INTERNAL_VALIDATOR_FAULT
        assert "tenant" not in context.results

    @pytest.mark.asyncio
    async def test_concurrent_requests_fetch_key_set_once(self, resolver, key_server, token_generator):
        """Test that parallel requests share one key set fetch."""
        key_server.delay = 0.05
        pipeline = self.build_pipeline(resolver, trust_entries({}))
        contexts = [PipelineContext(authorization=token_generator.authorization()) for _ in range(8)]

        results = await asyncio.gather(*(pipeline.run(context) for context in contexts))

        assert all(isinstance(result, PipelineContext) for result in results)
        assert key_server.calls[SANDBOX_JKU] == 1

    @pytest.mark.asyncio
    async def test_key_rotation_is_picked_up(self, resolver, key_server, token_generator, signing_key, rotated_key):
        """Test a token signed with a newly published key after the cache warmed up."""
        pipeline = self.build_pipeline(resolver, trust_entries({}))
        await pipeline.run(PipelineContext(authorization=token_generator.authorization()))

        key_server.publish(SANDBOX_JKU, signing_key, rotated_key)
        context = PipelineContext(authorization=MockTokenGenerator(rotated_key).authorization())
        result = await pipeline.run(context)

        assert result is context
        assert context.get_result("token").payload["token"].key_id == rotated_key.kid
        assert key_server.calls[SANDBOX_JKU] == 2
