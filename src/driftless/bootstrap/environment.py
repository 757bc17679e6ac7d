"""Environment client interface and its Kubernetes implementation.

The bootstrap engine only ever needs get/create/update/list on arbitrary
objects plus a readiness-condition read. Everything cluster specific stays
behind EnvironmentClient so tests can substitute an in-memory environment.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import (
    EnvironmentClientError,
    NotFoundError,
    ObjectConflictError,
    TransientNetworkError,
)
from ..shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ObjectRef:
    """Reference to one object in the environment."""

    api_version: str
    kind: str
    name: str
    namespace: str = ""

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ObjectRef:
        metadata = obj.get("metadata") or {}
        return cls(
            api_version=obj.get("apiVersion", ""),
            kind=obj.get("kind", ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", "") or "",
        )


class ConditionStatus(Enum):
    """Tri-state value of a status condition."""

    UNKNOWN = "Unknown"
    TRUE = "True"
    FALSE = "False"


@dataclass(frozen=True)
class Condition:
    """Observed readiness condition of an object."""

    status: ConditionStatus
    reason: str = ""
    message: str = ""


def find_condition(obj: dict[str, Any], condition_type: str) -> dict[str, Any] | None:
    for condition in (obj.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def evaluate_condition(obj: dict[str, Any], condition_type: str) -> Condition:
    """Derive a readiness condition from an object's status.

    Status is only trusted once the controller has observed the current
    generation. Deployments are special-cased: ``Available=False`` is normal
    while pods start, so failure is read from ``Progressing=False`` instead.
    """
    metadata = obj.get("metadata") or {}
    status = obj.get("status") or {}
    generation = metadata.get("generation")
    observed = status.get("observedGeneration")
    if generation is not None and observed is not None and generation != observed:
        return Condition(ConditionStatus.UNKNOWN, reason="Progressing",
                         message="waiting for the current generation to be observed")

    if obj.get("kind") == "Deployment" and condition_type == "Available":
        progressing = find_condition(obj, "Progressing")
        if progressing and progressing.get("status") == "False":
            return Condition(
                ConditionStatus.FALSE,
                reason=progressing.get("reason", ""),
                message=progressing.get("message", ""),
            )
        available = find_condition(obj, "Available")
        if available and available.get("status") == "True":
            return Condition(ConditionStatus.TRUE, reason=available.get("reason", ""))
        return Condition(ConditionStatus.UNKNOWN, reason="Progressing",
                         message="deployment is not available yet")

    condition = find_condition(obj, condition_type)
    if condition is None:
        return Condition(ConditionStatus.UNKNOWN, message=f"no {condition_type} condition yet")
    try:
        value = ConditionStatus(condition.get("status", "Unknown"))
    except ValueError:
        value = ConditionStatus.UNKNOWN
    return Condition(value, reason=condition.get("reason", ""), message=condition.get("message", ""))


class EnvironmentClient(ABC):
    """Minimal object-store interface of a target environment."""

    @abstractmethod
    def get(self, ref: ObjectRef) -> dict[str, Any]:
        """Return the object, or raise NotFoundError."""

    @abstractmethod
    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create the object and return the stored version."""

    @abstractmethod
    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the object.

        ``metadata.resourceVersion`` must be the version the change was based
        on; a stale version raises ObjectConflictError.
        """

    @abstractmethod
    def list(self, api_version: str, kind: str, namespace: str | None = None) -> list[dict[str, Any]]:
        """List objects of a kind, optionally scoped to a namespace."""

    def read_condition(self, ref: ObjectRef, condition_type: str) -> Condition:
        """Read a readiness condition. A missing object reads as Unknown."""
        try:
            obj = self.get(ref)
        except NotFoundError:
            return Condition(ConditionStatus.UNKNOWN, reason="NotFound", message=f"{ref} not found")
        return evaluate_condition(obj, condition_type)


class KubernetesEnvironmentClient(EnvironmentClient):
    """EnvironmentClient backed by the Kubernetes dynamic client."""

    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        api_client: Any = None,
    ):
        """Initialize client.

        Args:
            kubeconfig: Path to kubeconfig file (default: KUBECONFIG or ~/.kube/config).
            context: Kubeconfig context to use.
            api_client: Pre-built kubernetes ApiClient, mostly for tests.
        """
        from kubernetes import config as k8s_config
        from kubernetes.client import ApiClient
        from kubernetes.config.config_exception import ConfigException
        from kubernetes.dynamic import DynamicClient

        if api_client is None:
            try:
                api_client = k8s_config.new_client_from_config(
                    config_file=kubeconfig, context=context
                )
            except (ConfigException, OSError) as e:
                raise EnvironmentClientError(
                    f"kubernetes configuration load failed: {e}"
                ) from e
        self._api_client: ApiClient = api_client
        self._client = DynamicClient(api_client)

    def _resource(self, api_version: str, kind: str, refresh: bool = True):
        from kubernetes.dynamic.exceptions import ResourceNotFoundError

        try:
            return self._client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            if refresh:
                # Kind may have just been registered by a CRD; rediscover once.
                self._client.resources.invalidate_cache()
                return self._resource(api_version, kind, refresh=False)
            raise NotFoundError(f"{kind}.{api_version} is not served by the cluster") from e

    def _call(self, description: str, fn, *args, **kwargs):
        from kubernetes.dynamic.exceptions import (
            ConflictError,
            DynamicApiError,
        )
        from kubernetes.dynamic.exceptions import NotFoundError as K8sNotFoundError
        from urllib3.exceptions import HTTPError

        try:
            return fn(*args, **kwargs)
        except K8sNotFoundError as e:
            raise NotFoundError(f"{description}: not found") from e
        except ConflictError as e:
            raise ObjectConflictError(f"{description}: {e.summary()}") from e
        except DynamicApiError as e:
            status = getattr(e, "status", None)
            if status in (429, 500, 502, 503, 504):
                raise TransientNetworkError(f"{description}: {e.summary()}") from e
            raise EnvironmentClientError(f"{description}: {e.summary()}", status=status) from e
        except HTTPError as e:
            raise TransientNetworkError(f"{description}: {e}") from e

    @staticmethod
    def _namespace_arg(resource, namespace: str) -> str | None:
        return namespace or None if resource.namespaced else None

    def get(self, ref: ObjectRef) -> dict[str, Any]:
        resource = self._resource(ref.api_version, ref.kind)
        result = self._call(
            f"get {ref}",
            resource.get,
            name=ref.name,
            namespace=self._namespace_arg(resource, ref.namespace),
        )
        return result.to_dict()

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        ref = ObjectRef.from_object(obj)
        resource = self._resource(ref.api_version, ref.kind)
        result = self._call(
            f"create {ref}",
            resource.create,
            body=obj,
            namespace=self._namespace_arg(resource, ref.namespace),
        )
        return result.to_dict()

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        ref = ObjectRef.from_object(obj)
        resource = self._resource(ref.api_version, ref.kind)
        result = self._call(
            f"update {ref}",
            resource.replace,
            body=obj,
            namespace=self._namespace_arg(resource, ref.namespace),
        )
        return result.to_dict()

    def list(self, api_version: str, kind: str, namespace: str | None = None) -> list[dict[str, Any]]:
        resource = self._resource(api_version, kind)
        result = self._call(
            f"list {kind}",
            resource.get,
            namespace=self._namespace_arg(resource, namespace or ""),
        )
        return [item.to_dict() if hasattr(item, "to_dict") else item for item in result.items]
