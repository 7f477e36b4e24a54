"""
Shared pytest fixtures.
"""

import pytest

from shared.test_helpers import (
    MockKeySetServer,
    MockTokenGenerator,
    SANDBOX_JKU,
    generate_signing_key,
)


@pytest.fixture(scope="session")
def signing_key():
    """RSA key published by the sandbox issuer."""
    return generate_signing_key("sandbox-key-1")


@pytest.fixture(scope="session")
def rotated_key():
    """Key the sandbox issuer rotates to."""
    return generate_signing_key("sandbox-key-2")


@pytest.fixture
def key_server(signing_key):
    """Mock key set endpoint publishing the sandbox key."""
    server = MockKeySetServer()
    server.publish(SANDBOX_JKU, signing_key)
    return server


@pytest.fixture
def token_generator(signing_key):
    """Signs sandbox tokens with the published key."""
    return MockTokenGenerator(signing_key)
