"""Bootstrap engine for GitOps delivery.

This package provides the engine behind `driftless bootstrap`, which:
1. Validates options and checks the environment is reachable
2. Clones (or initializes) the repository
3. Generates, commits and applies the component manifests
4. Waits for the components to become healthy
5. Provisions the credential the environment pulls with
6. Generates, commits and applies the sync manifests, then waits for them
"""

from .applier import (
    ApplyResult,
    EnvironmentApplier,
    ReadinessState,
    ReadinessTarget,
    install_targets,
    load_artifacts,
    sync_targets,
)
from .credentials import (
    BasicCredential,
    CredentialBundle,
    CredentialProvisioner,
    SSHCredential,
    TLSCredential,
    generate_key_pair,
    scan_host_keys,
)
from .environment import (
    Condition,
    ConditionStatus,
    EnvironmentClient,
    KubernetesEnvironmentClient,
    ObjectRef,
)
from .gitcli import GitCLIDriver
from .manifests import Artifact, ArtifactKind, ArtifactSet, ManifestGenerator
from .options import (
    AuthMethod,
    BootstrapOptions,
    CredentialKind,
    InstallOptions,
    KeyAlgorithm,
    ProviderOptions,
    SecretOptions,
    SyncOptions,
)
from .orchestrator import (
    BootstrapOrchestrator,
    BootstrapRun,
    BootstrapStep,
    StepOutcome,
    auto_accept,
)
from .provider import GitHubProvider, GitLabProvider, Provider, deploy_key_label
from .repository import HandleState, RepositoryDriver, RepositoryHandle

__all__ = [
    # Options
    "AuthMethod",
    "BootstrapOptions",
    "CredentialKind",
    "InstallOptions",
    "KeyAlgorithm",
    "ProviderOptions",
    "SecretOptions",
    "SyncOptions",
    # Repository
    "GitCLIDriver",
    "HandleState",
    "RepositoryDriver",
    "RepositoryHandle",
    # Credentials
    "BasicCredential",
    "CredentialBundle",
    "CredentialProvisioner",
    "SSHCredential",
    "TLSCredential",
    "generate_key_pair",
    "scan_host_keys",
    # Manifests
    "Artifact",
    "ArtifactKind",
    "ArtifactSet",
    "ManifestGenerator",
    # Environment
    "ApplyResult",
    "Condition",
    "ConditionStatus",
    "EnvironmentApplier",
    "EnvironmentClient",
    "KubernetesEnvironmentClient",
    "ObjectRef",
    "ReadinessState",
    "ReadinessTarget",
    "install_targets",
    "load_artifacts",
    "sync_targets",
    # Providers
    "GitHubProvider",
    "GitLabProvider",
    "Provider",
    "deploy_key_label",
    # Orchestration
    "BootstrapOrchestrator",
    "BootstrapRun",
    "BootstrapStep",
    "StepOutcome",
    "auto_accept",
]
