"""Options for a single bootstrap invocation.

The CLI builds one BootstrapOptions value per invocation and hands it to the
orchestrator, which passes the nested option groups to its collaborators.
Nothing in the engine reads module-level mutable state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from ..errors import ValidationError

DEFAULT_NAMESPACE = "flux-system"
DEFAULT_VERSION = "v0.8.0"
DEFAULT_REGISTRY = "ghcr.io/fluxcd"
DEFAULT_BRANCH = "main"
DEFAULT_AUTHOR_NAME = "Flux"
DEFAULT_NOTIFICATION_CONTROLLER = "notification-controller"

DEFAULT_COMPONENTS = [
    "source-controller",
    "kustomize-controller",
    "helm-controller",
    "notification-controller",
]
EXTRA_COMPONENTS = [
    "image-reflector-controller",
    "image-automation-controller",
]

LOG_LEVELS = ("debug", "info", "error")
ECDSA_CURVES = ("p256", "p384", "p521")


class AuthMethod(Enum):
    """How the local working copy authenticates against the remote."""

    NONE = "none"
    BASIC = "basic"
    SSH = "ssh"


class CredentialKind(Enum):
    """Kind of credential material stored for the environment."""

    SSH = "ssh"
    BASIC = "basic"
    TLS = "tls"


class KeyAlgorithm(Enum):
    """Supported asymmetric key algorithms."""

    RSA = "rsa"
    ECDSA = "ecdsa"
    ED25519 = "ed25519"


def validate_rsa_bits(bits: int) -> int:
    """Accept RSA key sizes of at least 1024 bits in whole bytes."""
    if bits < 1024 or bits % 8 != 0:
        raise ValidationError(f"RSA key bits must be >= 1024 and a multiple of 8, got {bits}")
    return bits


@dataclass
class InstallOptions:
    """Options for rendering the installation artifact set."""

    namespace: str = DEFAULT_NAMESPACE
    version: str = DEFAULT_VERSION
    components: list[str] = field(default_factory=lambda: list(DEFAULT_COMPONENTS))
    components_extra: list[str] = field(default_factory=list)
    registry: str = DEFAULT_REGISTRY
    image_pull_secret: str = ""
    watch_all_namespaces: bool = True
    network_policy: bool = True
    log_level: str = "info"
    cluster_domain: str = "cluster.local"
    toleration_keys: list[str] = field(default_factory=list)
    notification_controller: str = DEFAULT_NOTIFICATION_CONTROLLER
    target_path: str = ""
    manifests_path: Path | None = None

    @property
    def all_components(self) -> list[str]:
        return self.components + [c for c in self.components_extra if c not in self.components]

    @property
    def events_address(self) -> str:
        """Notification endpoint wired into the other controllers, if installed."""
        if self.notification_controller in self.all_components:
            return (
                f"http://{self.notification_controller}.{self.namespace}"
                f".svc.{self.cluster_domain}./"
            )
        return ""

    def validate(self) -> None:
        known = DEFAULT_COMPONENTS + EXTRA_COMPONENTS
        for component in self.all_components:
            if component not in known:
                raise ValidationError(f"component {component} is not available")
        if self.log_level not in LOG_LEVELS:
            raise ValidationError(
                f"unsupported log level '{self.log_level}', must be one of: {', '.join(LOG_LEVELS)}"
            )
        if not self.namespace:
            raise ValidationError("namespace is required")
        if self.manifests_path is not None and not Path(self.manifests_path).is_dir():
            raise ValidationError(f"manifests path {self.manifests_path} is not a directory")


@dataclass
class SecretOptions:
    """Options for provisioning the environment-side credential."""

    name: str = DEFAULT_NAMESPACE
    namespace: str = DEFAULT_NAMESPACE
    kind: CredentialKind = CredentialKind.SSH
    username: str = ""
    password: str = ""
    ca_file: Path | None = None
    cert_file: Path | None = None
    key_file: Path | None = None
    private_key_file: Path | None = None
    key_algorithm: KeyAlgorithm = KeyAlgorithm.RSA
    rsa_bits: int = 2048
    ecdsa_curve: str = "p384"
    ssh_hostname: str = ""
    host_scan_timeout: float = 30.0
    labels: dict[str, str] = field(default_factory=dict)
    force: bool = False

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("secret name is required")
        if self.kind is CredentialKind.SSH:
            if not self.ssh_hostname:
                raise ValidationError("an SSH hostname is required for SSH credentials")
            if self.key_algorithm is KeyAlgorithm.RSA:
                validate_rsa_bits(self.rsa_bits)
            if self.key_algorithm is KeyAlgorithm.ECDSA and self.ecdsa_curve not in ECDSA_CURVES:
                raise ValidationError(
                    f"unsupported ECDSA curve '{self.ecdsa_curve}', "
                    f"must be one of: {', '.join(ECDSA_CURVES)}"
                )
        elif self.kind is CredentialKind.BASIC:
            if not self.username or not self.password:
                raise ValidationError("for Git over HTTP/S the username and password are required")
        elif self.kind is CredentialKind.TLS:
            if bool(self.cert_file) != bool(self.key_file):
                raise ValidationError("TLS credentials require both a cert file and a key file")
            if not self.cert_file and not self.ca_file:
                raise ValidationError("TLS credentials require a cert/key pair or a CA file")


@dataclass
class SyncOptions:
    """Options for rendering the sync-pointer artifact set."""

    name: str = DEFAULT_NAMESPACE
    namespace: str = DEFAULT_NAMESPACE
    url: str = ""
    branch: str = DEFAULT_BRANCH
    interval: int = 60
    secret_name: str = DEFAULT_NAMESPACE
    target_path: str = ""
    recurse_submodules: bool = False


@dataclass
class ProviderOptions:
    """Options for the optional repository hosting provider."""

    owner: str = ""
    repository: str = ""
    private: bool = True
    personal: bool = False
    hostname: str = ""
    token: str = ""


@dataclass
class BootstrapOptions:
    """Everything one bootstrap run needs, built once per invocation."""

    url: str = ""
    branch: str = DEFAULT_BRANCH
    path: str = ""
    author_name: str = DEFAULT_AUTHOR_NAME
    author_email: str = ""
    commit_message_appendix: str = ""

    auth: AuthMethod = AuthMethod.NONE
    username: str = "git"
    password: str = ""
    private_key_file: Path | None = None
    token_auth: bool = False

    timeout: float = 300.0
    poll_interval: float = 2.0
    push_attempts: int = 3
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    work_dir: Path | None = None
    kubeconfig: str | None = None
    kubecontext: str | None = None

    install: InstallOptions = field(default_factory=InstallOptions)
    secret: SecretOptions = field(default_factory=SecretOptions)
    sync: SyncOptions = field(default_factory=SyncOptions)
    provider: ProviderOptions | None = None

    @property
    def namespace(self) -> str:
        return self.install.namespace

    @property
    def target_path(self) -> str:
        return self.path.strip("/")

    @property
    def components_path(self) -> str:
        """Repository path that holds the generated artifact tree."""
        return "/".join(p for p in (self.target_path, self.namespace) if p)

    def validate(self) -> None:
        """Check required identifiers and mutually exclusive options."""
        if not self.url:
            raise ValidationError("repository URL is required")
        scheme = urlsplit(self.url).scheme
        if scheme not in ("ssh", "http", "https", "file"):
            raise ValidationError(
                f"git URL scheme '{scheme}' not supported, can be: ssh, http and https"
            )
        if not self.branch:
            raise ValidationError("branch is required")
        if ".." in self.target_path.split("/"):
            raise ValidationError(f"path '{self.path}' must be relative to the repository root")
        if self.auth is AuthMethod.BASIC and self.private_key_file:
            raise ValidationError(
                "cannot use basic credentials and a private key file for the same remote"
            )
        if self.auth is AuthMethod.SSH and scheme in ("http", "https"):
            raise ValidationError("SSH key authentication requires an ssh:// repository URL")
        if self.auth is AuthMethod.BASIC and scheme == "ssh":
            raise ValidationError("basic authentication requires an http(s):// repository URL")
        if self.token_auth and self.secret.kind is CredentialKind.SSH:
            raise ValidationError("token authentication cannot be combined with SSH key generation")
        if self.push_attempts < 1 or self.retry_attempts < 1:
            raise ValidationError("push and retry attempts must be at least 1")
        if self.poll_interval <= 0 or self.timeout <= 0:
            raise ValidationError("poll interval and timeout must be positive")
        if self.provider is not None and not (self.provider.owner and self.provider.repository):
            raise ValidationError("provider bootstrap requires an owner and a repository name")
        self.install.validate()
        self.secret.validate()


def sync_url_for(options: BootstrapOptions) -> str:
    """Rewrite the repository URL to match the environment-side auth config.

    With token auth the environment pulls over HTTPS without user info; with
    SSH it pulls as ``<username>@<ssh hostname>``. Other credential kinds
    keep the URL as given.
    """
    parts = urlsplit(options.url)
    host = parts.hostname or ""
    if parts.scheme == "file":
        return options.url
    if options.token_auth:
        return urlunsplit(("https", host, parts.path, "", ""))
    if options.secret.kind is not CredentialKind.SSH:
        return options.url
    ssh_host = options.secret.ssh_hostname or (
        f"{host}:{parts.port}" if parts.port else host
    )
    return urlunsplit(("ssh", f"{options.username}@{ssh_host}", parts.path, "", ""))
