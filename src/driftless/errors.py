"""Error taxonomy for the bootstrap engine.

Every failure raised by the engine is a BootstrapError subclass carrying a
human-readable message, a retryable flag used by the orchestrator's retry
policy, and a free-form data dict for diagnostics.

NoChangesError is deliberately not a BootstrapError: it signals a successful
no-op commit and callers treat it as "already up to date".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class BootstrapError(Exception):
    """Base error class for bootstrap errors."""

    message: str
    retryable: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationError(BootstrapError):
    """Pre-flight validation failed. Raised before any side effect."""

    message: str = "Invalid options"


@dataclass
class TransientNetworkError(BootstrapError):
    """Remote operation failed for a reason worth retrying."""

    message: str = "Network error"
    retryable: bool = True


@dataclass
class ConflictError(BootstrapError):
    """Push rejected because the remote branch moved (non-fast-forward)."""

    message: str = "Push rejected: remote branch has diverged"
    retryable: bool = True


@dataclass
class AuthenticationError(BootstrapError):
    """Remote rejected the supplied credentials."""

    message: str = "Authentication failed"


@dataclass
class RepositoryError(BootstrapError):
    """Local working copy operation failed."""

    message: str = "Repository operation failed"


@dataclass
class CredentialError(BootstrapError):
    """Credential material could not be generated or loaded."""

    message: str = "Credential generation failed"


@dataclass
class HostScanError(BootstrapError):
    """Remote host identity could not be resolved."""

    message: str = "Host key scan failed"
    retryable: bool = True


@dataclass
class ProviderError(BootstrapError):
    """Repository hosting provider API call failed."""

    message: str = "Provider request failed"
    status_code: int | None = None


@dataclass
class EnvironmentClientError(BootstrapError):
    """Environment API call failed."""

    message: str = "Environment request failed"
    status: int | None = None


@dataclass
class NotFoundError(EnvironmentClientError):
    """Object does not exist in the environment."""

    message: str = "Object not found"
    status: int | None = 404


@dataclass
class ObjectConflictError(EnvironmentClientError):
    """Object update lost an optimistic-concurrency race."""

    message: str = "Object was modified concurrently"
    status: int | None = 409
    retryable: bool = True


@dataclass
class ReadinessFailure(BootstrapError):
    """A polled object reported a failed readiness condition."""

    message: str = "Object reported a failed condition"
    object_ref: str = ""
    reason: str = ""


@dataclass
class ReadinessTimeout(BootstrapError):
    """Deadline elapsed before all polled objects became ready."""

    message: str = "Timed out waiting for readiness"
    pending: list[str] = field(default_factory=list)


@dataclass
class ConfirmationDeclined(BootstrapError):
    """Interactive confirmation callback rejected the credential."""

    message: str = "Aborted: credential was not accepted"


@dataclass
class StepFailed(BootstrapError):
    """Terminal Failed(step, cause) state of a bootstrap run."""

    message: str = "Bootstrap failed"
    step: str = ""
    cause: BootstrapError | None = None


class NoChangesError(Exception):
    """Commit was skipped because the working tree matches HEAD."""

    def __init__(self, revision: str):
        self.revision = revision
        super().__init__(f"no changes to commit, HEAD is at {revision or '<unborn>'}")
