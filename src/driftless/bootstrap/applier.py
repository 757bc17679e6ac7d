"""Apply artifact sets to the environment and wait for readiness.

apply() is create-or-update for every object an artifact path describes. It
is the install path and the upgrade path at the same time: a second call with
an unchanged tree issues no writes at all, because objects whose desired
fields already match are skipped.
"""

from __future__ import annotations

import base64
import copy
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from ..errors import (
    BootstrapError,
    NotFoundError,
    ObjectConflictError,
    ReadinessFailure,
    ReadinessTimeout,
    ValidationError,
)
from ..shared.logging import get_logger
from .environment import ConditionStatus, EnvironmentClient, ObjectRef
from .manifests import (
    KUSTOMIZATION_API_VERSION,
    KUSTOMIZATION_FILE,
    KUSTOMIZE_API_VERSION,
    SOURCE_API_VERSION,
)
from .options import InstallOptions, SyncOptions

logger = get_logger(__name__)

# Lower applies first: namespaces and CRDs must exist before what uses them
_KIND_ORDER = {
    "Namespace": 0,
    "CustomResourceDefinition": 1,
    "ServiceAccount": 2,
    "ClusterRole": 3,
    "ClusterRoleBinding": 4,
    "Role": 3,
    "RoleBinding": 4,
    "Secret": 5,
    "ConfigMap": 5,
    "Service": 6,
    "Deployment": 7,
}
_DEFAULT_ORDER = 8

# Top-level fields owned by the server, never copied from the desired object
_SERVER_FIELDS = ("apiVersion", "kind", "metadata", "status")


class ReadinessState(Enum):
    """Observable state of a readiness target."""

    UNKNOWN = "unknown"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ReadinessTarget:
    """An object and the condition that signals it is ready."""

    ref: ObjectRef
    condition: str = "Ready"


@dataclass
class ApplyResult:
    """Per-object outcome of one apply() call."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated)


def install_targets(options: InstallOptions) -> list[ReadinessTarget]:
    """Controller deployments of an installation."""
    return [
        ReadinessTarget(ObjectRef("apps/v1", "Deployment", component, options.namespace), "Available")
        for component in options.all_components
    ]


def sync_targets(options: SyncOptions) -> list[ReadinessTarget]:
    """The source and the kustomization created by the sync-pointer set."""
    return [
        ReadinessTarget(ObjectRef(SOURCE_API_VERSION, "GitRepository", options.name, options.namespace)),
        ReadinessTarget(ObjectRef(KUSTOMIZE_API_VERSION, "Kustomization", options.name, options.namespace)),
    ]


def _read_documents(path: Path) -> list[dict[str, Any]]:
    try:
        with open(path) as f:
            return [doc for doc in yaml.safe_load_all(f) if doc]
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"failed to read manifests from {path}: {e}") from e


def _is_entry_point(obj: dict[str, Any]) -> bool:
    return obj.get("apiVersion") == KUSTOMIZATION_API_VERSION and obj.get("kind") == "Kustomization"


def load_artifacts(path: Path) -> list[dict[str, Any]]:
    """Collect the objects described by an artifact path.

    A directory with a kustomization.yaml is expanded through its
    ``resources`` list (files or nested directories, recursively); a directory
    without one contributes every ``*.yaml`` file in name order.
    """
    path = Path(path)
    if path.is_file():
        return [obj for obj in _read_documents(path) if not _is_entry_point(obj)]
    if not path.is_dir():
        raise ValidationError(f"artifact path {path} does not exist")

    entry = path / KUSTOMIZATION_FILE
    if not entry.is_file():
        objects = []
        for file in sorted(path.glob("*.yaml")):
            objects.extend(load_artifacts(file))
        return objects

    objects = []
    for doc in _read_documents(entry):
        for resource in doc.get("resources") or []:
            objects.extend(load_artifacts(path / resource))
    return objects


def normalize(obj: dict[str, Any]) -> dict[str, Any]:
    """Fold Secret ``stringData`` into base64 ``data`` as the server stores it."""
    if obj.get("kind") != "Secret" or "stringData" not in obj:
        return obj
    obj = copy.deepcopy(obj)
    data = dict(obj.get("data") or {})
    for key, value in obj.pop("stringData").items():
        data[key] = base64.b64encode(value.encode()).decode()
    obj["data"] = data
    return obj


def is_subset(desired: Any, existing: Any) -> bool:
    """True when every field of ``desired`` is present and equal in ``existing``.

    Extra fields in ``existing`` are server defaults and are ignored.
    """
    if isinstance(desired, dict):
        if not isinstance(existing, dict):
            return False
        return all(k in existing and is_subset(v, existing[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(existing, list) or len(desired) != len(existing):
            return False
        return all(is_subset(d, e) for d, e in zip(desired, existing))
    return desired == existing


def _matches(desired: dict[str, Any], existing: dict[str, Any]) -> bool:
    desired_meta = desired.get("metadata") or {}
    existing_meta = existing.get("metadata") or {}
    for key in ("labels", "annotations"):
        if not is_subset(desired_meta.get(key) or {}, existing_meta.get(key) or {}):
            return False
    return all(
        is_subset(value, existing.get(key))
        for key, value in desired.items()
        if key not in _SERVER_FIELDS
    )


def _merge(desired: dict[str, Any], existing: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(existing)
    merged.pop("status", None)
    for key, value in desired.items():
        if key not in _SERVER_FIELDS:
            merged[key] = copy.deepcopy(value)
    metadata = merged.setdefault("metadata", {})
    for key in ("labels", "annotations"):
        if desired.get("metadata", {}).get(key):
            metadata[key] = {**(metadata.get(key) or {}), **desired["metadata"][key]}
    return merged


class EnvironmentApplier:
    """Idempotent apply plus readiness polling over an EnvironmentClient."""

    def __init__(
        self,
        client: EnvironmentClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        conflict_attempts: int = 5,
    ):
        self.client = client
        self.sleep = sleep
        self.clock = clock
        self.conflict_attempts = conflict_attempts

    def apply(self, path: Path) -> ApplyResult:
        """Create or update every object described by ``path``."""
        return self.apply_objects(load_artifacts(path))

    def apply_objects(self, objects: Iterable[dict[str, Any]]) -> ApplyResult:
        result = ApplyResult()
        ordered = sorted(objects, key=lambda o: _KIND_ORDER.get(o.get("kind", ""), _DEFAULT_ORDER))
        for obj in ordered:
            ref = ObjectRef.from_object(obj)
            outcome = self.upsert(obj)
            getattr(result, outcome).append(str(ref))
        logger.info(
            "applied",
            created=len(result.created),
            updated=len(result.updated),
            unchanged=len(result.unchanged),
        )
        return result

    def upsert(self, obj: dict[str, Any]) -> str:
        """Read-modify-write one object, retrying lost update races.

        Returns:
            "created", "updated" or "unchanged".
        """
        desired = normalize(obj)
        ref = ObjectRef.from_object(desired)
        for attempt in range(1, self.conflict_attempts + 1):
            try:
                existing = self.client.get(ref)
            except NotFoundError:
                try:
                    self.client.create(desired)
                except ObjectConflictError:
                    # Created concurrently; go round again and update it
                    logger.debug("create raced", object=str(ref), attempt=attempt)
                    continue
                logger.debug("created", object=str(ref))
                return "created"

            if _matches(desired, existing):
                return "unchanged"
            try:
                self.client.update(_merge(desired, existing))
            except ObjectConflictError:
                logger.debug("update conflict", object=str(ref), attempt=attempt)
                continue
            logger.debug("updated", object=str(ref))
            return "updated"

        raise ObjectConflictError(
            f"{ref} kept changing, gave up after {self.conflict_attempts} attempts",
            data={"object": str(ref)},
        )

    def observe(self, target: ReadinessTarget) -> tuple[ReadinessState, str]:
        """Read the target's condition once. Transient read errors read as Unknown."""
        try:
            condition = self.client.read_condition(target.ref, target.condition)
        except BootstrapError as e:
            if not e.retryable:
                raise
            return ReadinessState.UNKNOWN, str(e)
        if condition.status is ConditionStatus.TRUE:
            return ReadinessState.READY, condition.message
        if condition.status is ConditionStatus.FALSE:
            return ReadinessState.FAILED, condition.message or condition.reason
        return ReadinessState.UNKNOWN, condition.message

    def poll_ready(
        self,
        targets: list[ReadinessTarget],
        interval: float,
        timeout: float,
    ) -> None:
        """Poll until every target is Ready.

        Raises:
            ReadinessFailure: as soon as any target reports a failed condition.
            ReadinessTimeout: when ``timeout`` seconds pass with targets pending.
        """
        deadline = self.clock() + timeout
        pending = list(targets)
        while True:
            waiting = []
            for target in pending:
                state, message = self.observe(target)
                if state is ReadinessState.FAILED:
                    raise ReadinessFailure(
                        f"{target.ref} {target.condition} condition failed: {message}",
                        object_ref=str(target.ref),
                        reason=message,
                    )
                if state is ReadinessState.UNKNOWN:
                    waiting.append(target)
            if not waiting:
                logger.info("ready", targets=[str(t.ref) for t in targets])
                return

            pending = waiting
            remaining = deadline - self.clock()
            if remaining <= 0:
                names = [str(t.ref) for t in pending]
                raise ReadinessTimeout(
                    f"timed out after {timeout}s waiting for {', '.join(names)}",
                    pending=names,
                )
            logger.debug("waiting", pending=[str(t.ref) for t in pending])
            self.sleep(min(interval, remaining))
