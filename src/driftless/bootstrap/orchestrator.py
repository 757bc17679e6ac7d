"""Bootstrap orchestrator.

Sequences repository, manifest, credential and environment steps into one
re-runnable operation:

    Validate -> EnsureRepository -> GenerateInstall -> CommitInstall
    -> ApplyInstall -> WaitInstallReady -> ProvisionCredential
    -> RegisterWithProvider -> StoreCredential -> GenerateSync -> CommitSync
    -> ApplySync -> WaitSyncReady -> Done

Any step error ends the run in Failed(step, cause), raised as StepFailed.
Each step is safe to re-enter, so recovering from a partial failure is just
running again. A run against an already bootstrapped target commits nothing,
pushes nothing and regenerates no credential.
"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

from ..errors import (
    BootstrapError,
    ConfirmationDeclined,
    ConflictError,
    NoChangesError,
    StepFailed,
    ValidationError,
)
from ..shared.logging import get_logger
from .applier import ApplyResult, EnvironmentApplier, install_targets, sync_targets
from .credentials import CredentialBundle, CredentialProvisioner
from .environment import EnvironmentClient
from .manifests import COMPONENTS_DIR, ArtifactSet, ManifestGenerator
from .options import BootstrapOptions, CredentialKind, SyncOptions, sync_url_for
from .provider import Provider, deploy_key_label
from .repository import RepositoryDriver, RepositoryHandle

logger = get_logger(__name__)

T = TypeVar("T")

ConfirmCallback = Callable[[CredentialBundle], bool]
EventCallback = Callable[[str, str], None]

# Progress event kinds passed to the event callback
ACTION = "action"
SUCCESS = "success"
WAITING = "waiting"
FAILURE = "failure"


class BootstrapStep(Enum):
    """States of the bootstrap state machine."""

    VALIDATE = "Validate"
    ENSURE_REPOSITORY = "EnsureRepository"
    GENERATE_INSTALL = "GenerateInstall"
    COMMIT_INSTALL = "CommitInstall"
    APPLY_INSTALL = "ApplyInstall"
    WAIT_INSTALL_READY = "WaitInstallReady"
    PROVISION_CREDENTIAL = "ProvisionCredential"
    REGISTER_WITH_PROVIDER = "RegisterWithProvider"
    STORE_CREDENTIAL = "StoreCredential"
    GENERATE_SYNC = "GenerateSync"
    COMMIT_SYNC = "CommitSync"
    APPLY_SYNC = "ApplySync"
    WAIT_SYNC_READY = "WaitSyncReady"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class StepOutcome:
    """What one completed step did."""

    step: BootstrapStep
    detail: str = ""
    changed: bool = False


@dataclass
class BootstrapRun:
    """State threaded through one invocation. Never persisted."""

    options: BootstrapOptions
    handle: RepositoryHandle
    bundle: CredentialBundle | None = None
    install_set: ArtifactSet | None = None
    sync_set: ArtifactSet | None = None
    outcomes: list[StepOutcome] = field(default_factory=list)
    revisions: list[str] = field(default_factory=list)
    applied: list[ApplyResult] = field(default_factory=list)
    pushes: int = 0
    state: BootstrapStep = BootstrapStep.VALIDATE
    failed_step: BootstrapStep | None = None

    @property
    def changed(self) -> bool:
        return any(outcome.changed for outcome in self.outcomes)


def auto_accept(bundle: CredentialBundle) -> bool:
    """Confirmation callback for non-interactive runs."""
    return True


class BootstrapOrchestrator:
    """Run the bootstrap state machine for one target."""

    def __init__(
        self,
        options: BootstrapOptions,
        repository: RepositoryDriver,
        environment: EnvironmentClient,
        provider: Provider | None = None,
        generator: ManifestGenerator | None = None,
        provisioner: CredentialProvisioner | None = None,
        applier: EnvironmentApplier | None = None,
        confirm: ConfirmCallback = auto_accept,
        on_event: EventCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize orchestrator.

        Args:
            options: Options for this invocation.
            repository: Driver owning the working copy; closed when the run ends.
            environment: Client of the target environment.
            provider: Optional hosting provider for repository creation and
                deploy key registration.
            generator: Manifest generator (default: ManifestGenerator()).
            provisioner: Credential provisioner (default: one backed by
                ``environment``).
            applier: Environment applier (default: one backed by ``environment``).
            confirm: Called with every newly generated credential before it is
                registered or stored; returning False aborts the run.
            on_event: Receives (kind, message) progress events.
            sleep: Sleep function used for retry backoff.
        """
        self.options = options
        self.repository = repository
        self.environment = environment
        self.provider = provider
        self.generator = generator or ManifestGenerator()
        self.provisioner = provisioner or CredentialProvisioner(environment)
        self.applier = applier or EnvironmentApplier(environment)
        self.confirm = confirm
        self.on_event = on_event
        self.sleep = sleep

    def _steps(self) -> list[tuple[BootstrapStep, Callable[[BootstrapRun], StepOutcome]]]:
        return [
            (BootstrapStep.VALIDATE, self._validate),
            (BootstrapStep.ENSURE_REPOSITORY, self._ensure_repository),
            (BootstrapStep.GENERATE_INSTALL, self._generate_install),
            (BootstrapStep.COMMIT_INSTALL, self._commit_install),
            (BootstrapStep.APPLY_INSTALL, self._apply_install),
            (BootstrapStep.WAIT_INSTALL_READY, self._wait_install_ready),
            (BootstrapStep.PROVISION_CREDENTIAL, self._provision_credential),
            (BootstrapStep.REGISTER_WITH_PROVIDER, self._register_with_provider),
            (BootstrapStep.STORE_CREDENTIAL, self._store_credential),
            (BootstrapStep.GENERATE_SYNC, self._generate_sync),
            (BootstrapStep.COMMIT_SYNC, self._commit_sync),
            (BootstrapStep.APPLY_SYNC, self._apply_sync),
            (BootstrapStep.WAIT_SYNC_READY, self._wait_sync_ready),
        ]

    def run(self) -> BootstrapRun:
        """Run every step in order.

        Returns:
            The finished run, in state Done.

        Raises:
            StepFailed: naming the failed step, with the original error as cause.
        """
        run = BootstrapRun(options=self.options, handle=self.repository.handle)
        try:
            for step, handler in self._steps():
                run.state = step
                logger.debug("step started", step=step.value)
                try:
                    outcome = handler(run)
                except BootstrapError as e:
                    run.failed_step = step
                    run.state = BootstrapStep.FAILED
                    logger.error("step failed", step=step.value, error=str(e))
                    self._emit(FAILURE, str(e))
                    raise StepFailed(
                        f"{step.value} failed: {e}",
                        retryable=e.retryable,
                        step=step.value,
                        cause=e,
                    ) from e
                run.outcomes.append(outcome)
                if outcome.detail:
                    self._emit(SUCCESS, outcome.detail)
            run.state = BootstrapStep.DONE
            logger.info("bootstrap finished", pushes=run.pushes, changed=run.changed)
            return run
        finally:
            self.repository.close()

    # ── helpers ──

    def _emit(self, kind: str, message: str) -> None:
        if self.on_event is not None:
            self.on_event(kind, message)

    def _backoff(self, attempt: int) -> float:
        return self.options.retry_backoff * 2 ** (attempt - 1)

    def _retry(self, action: str, fn: Callable[[], T]) -> T:
        """Call ``fn``, retrying retryable errors with exponential backoff.

        Push conflicts are not retried here; they need the re-fetch cycle in
        _commit_and_push.
        """
        attempts = self.options.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except BootstrapError as e:
                if not e.retryable or isinstance(e, ConflictError) or attempt == attempts:
                    raise
                delay = self._backoff(attempt)
                logger.warning("retrying", action=action, attempt=attempt, delay=delay, error=str(e))
                self.sleep(delay)
        raise AssertionError("unreachable")

    def _message(self, subject: str) -> str:
        message = subject
        if self.options.commit_message_appendix:
            message = f"{message}\n\n{self.options.commit_message_appendix}"
        return message

    def _commit_and_push(self, run: BootstrapRun, artifacts: ArtifactSet, message: str) -> str | None:
        """Write, commit and push ``artifacts`` below the components path.

        Returns:
            The pushed revision, or None when the remote already holds the tree.

        Raises:
            ConflictError: when the branch kept moving for every attempt.
            RepositoryError: when the remote declines the push.
        """
        opts = self.options
        attempts = opts.push_attempts
        for attempt in range(1, attempts + 1):
            self.repository.write_tree(artifacts, prefix=opts.components_path)
            try:
                revision = self.repository.commit_if_changed(
                    opts.author_name, opts.author_email, self._message(message)
                )
            except NoChangesError as e:
                if not self.repository.has_unpushed_commits():
                    logger.info("no changes", revision=e.revision)
                    return None
                # An earlier commit never reached the remote.
                revision = e.revision
                logger.info("pushing unpushed revision", revision=revision)
            try:
                self._retry("push", self.repository.push)
            except ConflictError:
                if attempt == attempts:
                    raise
                delay = self._backoff(attempt)
                logger.warning("push rejected, refreshing", attempt=attempt, delay=delay)
                self.sleep(delay)
                self._retry("fetch", self.repository.refresh)
                continue
            run.pushes += 1
            run.revisions.append(revision)
            return revision
        raise AssertionError("unreachable")

    def _sync_options(self) -> SyncOptions:
        sync = self.options.sync
        if sync.url:
            return sync
        return dataclasses.replace(sync, url=sync_url_for(self.options))

    # ── steps ──

    def _validate(self, run: BootstrapRun) -> StepOutcome:
        self.options.validate()
        try:
            self.environment.list("v1", "Namespace")
        except BootstrapError as e:
            raise ValidationError(f"environment is not reachable: {e}") from e
        return StepOutcome(BootstrapStep.VALIDATE)

    def _ensure_repository(self, run: BootstrapRun) -> StepOutcome:
        opts = self.options
        created_remote = False
        if self.provider is not None and opts.provider is not None:
            p = opts.provider
            self._emit(ACTION, f"connecting to {self.provider.hostname}")
            created_remote = self._retry(
                "ensure repository",
                lambda: self.provider.ensure_repository_exists(
                    p.owner, p.repository, p.private, p.personal
                ),
            )
            if created_remote:
                self._emit(SUCCESS, f"repository {p.owner}/{p.repository} created")

        self._emit(ACTION, f"cloning branch \"{opts.branch}\" from Git repository \"{opts.url}\"")
        initialized = self._retry("clone", lambda: self.repository.ensure_open(opts.url, opts.branch))
        detail = "initialized new repository" if initialized else "cloned repository"
        return StepOutcome(BootstrapStep.ENSURE_REPOSITORY, detail, changed=created_remote)

    def _generate_install(self, run: BootstrapRun) -> StepOutcome:
        self._emit(ACTION, "generating component manifests")
        run.install_set = self.generator.render_install(self.options.install)
        return StepOutcome(
            BootstrapStep.GENERATE_INSTALL,
            f"generated component manifests ({run.install_set.digest[:12]})",
        )

    def _commit_install(self, run: BootstrapRun) -> StepOutcome:
        assert run.install_set is not None
        revision = self._commit_and_push(
            run, run.install_set, f"Add Flux {self.options.install.version} component manifests"
        )
        if revision is None:
            return StepOutcome(BootstrapStep.COMMIT_INSTALL, "component manifests are up to date")
        return StepOutcome(
            BootstrapStep.COMMIT_INSTALL,
            f"committed and pushed component manifests to \"{self.options.branch}\" ({revision})",
            changed=True,
        )

    def _apply_install(self, run: BootstrapRun) -> StepOutcome:
        self._emit(ACTION, f"installing components in \"{self.options.namespace}\" namespace")
        path = Path(self.repository.path, self.options.components_path, COMPONENTS_DIR)
        result = self._retry("apply install", lambda: self.applier.apply(path))
        run.applied.append(result)
        detail = "installed components" if result.changed else "components are up to date"
        return StepOutcome(BootstrapStep.APPLY_INSTALL, detail, changed=result.changed)

    def _wait_install_ready(self, run: BootstrapRun) -> StepOutcome:
        self._emit(WAITING, "waiting for components to be ready")
        self.applier.poll_ready(
            install_targets(self.options.install),
            self.options.poll_interval,
            self.options.timeout,
        )
        return StepOutcome(BootstrapStep.WAIT_INSTALL_READY, "all components are healthy")

    def _provision_credential(self, run: BootstrapRun) -> StepOutcome:
        secret = self.options.secret
        self._emit(ACTION, f"determining if source secret \"{secret.namespace}/{secret.name}\" exists")
        bundle = self._retry("provision credential", lambda: self.provisioner.generate(secret))
        run.bundle = bundle
        if bundle.reused:
            return StepOutcome(BootstrapStep.PROVISION_CREDENTIAL, "source secret up to date")

        if bundle.public_material:
            self._emit(SUCCESS, f"public key: {bundle.public_material}")
        if not self.confirm(bundle):
            raise ConfirmationDeclined()
        return StepOutcome(
            BootstrapStep.PROVISION_CREDENTIAL,
            f"generated {bundle.kind.value} credential",
            changed=True,
        )

    def _register_with_provider(self, run: BootstrapRun) -> StepOutcome:
        bundle = run.bundle
        if (
            self.provider is None
            or self.options.provider is None
            or bundle is None
            or bundle.kind is not CredentialKind.SSH
        ):
            return StepOutcome(BootstrapStep.REGISTER_WITH_PROVIDER)
        p = self.options.provider
        label = deploy_key_label(self.options.namespace, self.options.target_path)
        self._emit(ACTION, "configuring deploy key")
        changed = self._retry(
            "register deploy key",
            lambda: self.provider.register_deploy_key(
                p.owner, p.repository, bundle.public_material, label
            ),
        )
        detail = "configured deploy key" if changed else "deploy key is up to date"
        return StepOutcome(BootstrapStep.REGISTER_WITH_PROVIDER, f"{detail} \"{label}\"", changed=changed)

    def _store_credential(self, run: BootstrapRun) -> StepOutcome:
        assert run.bundle is not None
        if run.bundle.reused:
            return StepOutcome(BootstrapStep.STORE_CREDENTIAL)
        secret = self.generator.build_secret(run.bundle, self.options.secret)
        outcome = self._retry("store credential", lambda: self.applier.upsert(secret))
        return StepOutcome(
            BootstrapStep.STORE_CREDENTIAL,
            "source secret applied",
            changed=outcome != "unchanged",
        )

    def _generate_sync(self, run: BootstrapRun) -> StepOutcome:
        self._emit(ACTION, "generating sync manifests")
        run.sync_set = self.generator.render_sync(self._sync_options())
        return StepOutcome(
            BootstrapStep.GENERATE_SYNC,
            f"generated sync manifests ({run.sync_set.digest[:12]})",
        )

    def _commit_sync(self, run: BootstrapRun) -> StepOutcome:
        assert run.sync_set is not None
        revision = self._commit_and_push(run, run.sync_set, "Add Flux sync manifests")
        if revision is None:
            return StepOutcome(BootstrapStep.COMMIT_SYNC, "sync manifests are up to date")
        return StepOutcome(
            BootstrapStep.COMMIT_SYNC,
            f"committed and pushed sync manifests to \"{self.options.branch}\" ({revision})",
            changed=True,
        )

    def _apply_sync(self, run: BootstrapRun) -> StepOutcome:
        self._emit(ACTION, "applying sync manifests")
        path = Path(self.repository.path, self.options.components_path)
        result = self._retry("apply sync", lambda: self.applier.apply(path))
        run.applied.append(result)
        detail = "applied sync manifests" if result.changed else "sync manifests are up to date"
        return StepOutcome(BootstrapStep.APPLY_SYNC, detail, changed=result.changed)

    def _wait_sync_ready(self, run: BootstrapRun) -> StepOutcome:
        self._emit(WAITING, "waiting for Kustomization to be reconciled")
        self.applier.poll_ready(
            sync_targets(self._sync_options()),
            self.options.poll_interval,
            self.options.timeout,
        )
        return StepOutcome(BootstrapStep.WAIT_SYNC_READY, "reconciled sync configuration")
