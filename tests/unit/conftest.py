"""Shared fixtures for unit tests."""

import pytest

from driftless.bootstrap.options import (
    AuthMethod,
    BootstrapOptions,
    CredentialKind,
    InstallOptions,
    KeyAlgorithm,
    SecretOptions,
    SyncOptions,
)
from tests.mocks import HOST_KEYS, FakeEnvironmentClient, FakeRemote


@pytest.fixture
def environment() -> FakeEnvironmentClient:
    """Fixture providing an empty, reachable environment."""
    return FakeEnvironmentClient()


@pytest.fixture
def remote() -> FakeRemote:
    """Fixture providing an empty remote branch."""
    return FakeRemote()


@pytest.fixture
def bootstrap_options(tmp_path) -> BootstrapOptions:
    """Options for an SSH bootstrap of clusters/dev with an ed25519 key."""
    namespace = "flux-system"
    return BootstrapOptions(
        url="ssh://git@example.com/org/fleet",
        branch="main",
        path="clusters/dev",
        author_email="flux@example.com",
        auth=AuthMethod.SSH,
        poll_interval=0.01,
        timeout=1.0,
        retry_backoff=0.5,
        work_dir=tmp_path,
        install=InstallOptions(namespace=namespace),
        secret=SecretOptions(
            name=namespace,
            namespace=namespace,
            kind=CredentialKind.SSH,
            key_algorithm=KeyAlgorithm.ED25519,
            ssh_hostname="example.com",
        ),
        sync=SyncOptions(
            name=namespace,
            namespace=namespace,
            branch="main",
            secret_name=namespace,
            target_path="clusters/dev",
        ),
    )


@pytest.fixture
def host_scanner():
    """Fixture providing a recording host key scanner."""
    calls = []

    def scan(host: str, timeout: float) -> bytes:
        calls.append((host, timeout))
        return HOST_KEYS

    scan.calls = calls
    return scan
