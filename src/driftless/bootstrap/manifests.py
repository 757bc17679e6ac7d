"""Manifest generation for the bootstrap command.

Renders the installation artifact set (namespace, CRDs, access control and
controller deployments) and the sync-pointer artifact set (the source and
kustomization objects telling the environment where to pull from). Output is
a pure function of the options: no timestamps, no random names, keys in a
fixed order. Re-rendering unchanged options gives byte-identical files, which
is what lets the commit step detect "nothing to do".
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from ..errors import ValidationError
from ..shared.logging import get_logger
from .credentials import CredentialBundle
from .options import DEFAULT_NAMESPACE, InstallOptions, SecretOptions, SyncOptions

logger = get_logger(__name__)

KUSTOMIZATION_FILE = "kustomization.yaml"
COMPONENTS_DIR = "components"
SYNC_FILE = "gotk-sync.yaml"
RBAC_FILE = "rbac.yaml"

SOURCE_API_VERSION = "source.toolkit.fluxcd.io/v1beta1"
KUSTOMIZE_API_VERSION = "kustomize.toolkit.fluxcd.io/v1beta1"
KUSTOMIZATION_API_VERSION = "kustomize.config.k8s.io/v1beta1"

# Custom resources served by each controller: (group, version, kind, plural)
COMPONENT_CRDS: dict[str, list[tuple[str, str, str, str]]] = {
    "source-controller": [
        ("source.toolkit.fluxcd.io", "v1beta1", "GitRepository", "gitrepositories"),
        ("source.toolkit.fluxcd.io", "v1beta1", "HelmRepository", "helmrepositories"),
        ("source.toolkit.fluxcd.io", "v1beta1", "HelmChart", "helmcharts"),
        ("source.toolkit.fluxcd.io", "v1beta1", "Bucket", "buckets"),
    ],
    "kustomize-controller": [
        ("kustomize.toolkit.fluxcd.io", "v1beta1", "Kustomization", "kustomizations"),
    ],
    "helm-controller": [
        ("helm.toolkit.fluxcd.io", "v2beta1", "HelmRelease", "helmreleases"),
    ],
    "notification-controller": [
        ("notification.toolkit.fluxcd.io", "v1beta1", "Alert", "alerts"),
        ("notification.toolkit.fluxcd.io", "v1beta1", "Provider", "providers"),
        ("notification.toolkit.fluxcd.io", "v1beta1", "Receiver", "receivers"),
    ],
    "image-reflector-controller": [
        ("image.toolkit.fluxcd.io", "v1alpha2", "ImageRepository", "imagerepositories"),
        ("image.toolkit.fluxcd.io", "v1alpha2", "ImagePolicy", "imagepolicies"),
    ],
    "image-automation-controller": [
        ("image.toolkit.fluxcd.io", "v1alpha2", "ImageUpdateAutomation", "imageupdateautomations"),
    ],
}


class ArtifactKind(Enum):
    """The two artifact sets rendered per run."""

    INSTALL = "install"
    SYNC = "sync"


@dataclass(frozen=True)
class Artifact:
    """One generated file."""

    path: str
    content: bytes


class ArtifactSet:
    """Ordered (relative path, content) pairs plus a digest over the whole set."""

    def __init__(self, kind: ArtifactKind, artifacts: Iterable[Artifact] = ()):
        self.kind = kind
        self._artifacts: list[Artifact] = []
        for artifact in artifacts:
            self.add(artifact.path, artifact.content)

    def add(self, path: str, content: bytes) -> None:
        if any(a.path == path for a in self._artifacts):
            raise ValidationError(f"duplicate artifact path '{path}'")
        self._artifacts.append(Artifact(path, content))

    def __iter__(self) -> Iterator[tuple[str, bytes]]:
        return ((a.path, a.content) for a in self._artifacts)

    def __len__(self) -> int:
        return len(self._artifacts)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ArtifactSet):
            return NotImplemented
        return self.kind == other.kind and self._artifacts == other._artifacts

    @property
    def paths(self) -> list[str]:
        return [a.path for a in self._artifacts]

    def get(self, path: str) -> bytes:
        for artifact in self._artifacts:
            if artifact.path == path:
                return artifact.content
        raise KeyError(path)

    @property
    def digest(self) -> str:
        """SHA-256 over every path and content, in order."""
        h = hashlib.sha256()
        for artifact in self._artifacts:
            h.update(artifact.path.encode())
            h.update(b"\0")
            h.update(artifact.content)
            h.update(b"\0")
        return h.hexdigest()

    def write_to(self, base: Path) -> Path:
        """Write the set below ``base`` and return ``base``."""
        base = Path(base)
        for path, content in self:
            target = base / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        return base


def dump_objects(objects: list[dict[str, Any]]) -> bytes:
    """Serialize objects as a multi-document YAML stream."""
    return yaml.safe_dump_all(
        objects,
        default_flow_style=False,
        sort_keys=False,
        explicit_start=True,
    ).encode()


def format_duration(seconds: float) -> str:
    """Format seconds the way the controllers print durations (``1m0s``)."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def load_rbac(namespace: str) -> bytes:
    """Return the access-control artifact with its namespace references rewritten.

    The file is pre-built for the default namespace, so every occurrence of
    that name (subject namespaces, role names, instance labels) is replaced
    textually when installing elsewhere.
    """
    content = resources.files(__package__).joinpath(RBAC_FILE).read_bytes()
    if namespace != DEFAULT_NAMESPACE:
        content = content.replace(DEFAULT_NAMESPACE.encode(), namespace.encode())
    return content


class ManifestGenerator:
    """Render installation and sync artifact sets."""

    def render(self, kind: ArtifactKind, options: InstallOptions | SyncOptions) -> ArtifactSet:
        if kind is ArtifactKind.INSTALL:
            return self.render_install(options)  # type: ignore[arg-type]
        if kind is ArtifactKind.SYNC:
            return self.render_sync(options)  # type: ignore[arg-type]
        raise ValueError(f"unknown artifact kind {kind}")

    # ── installation ──

    def render_install(self, options: InstallOptions) -> ArtifactSet:
        """Render the installation set, rooted at ``components/``.

        Args:
            options: Installation options.

        Returns:
            Files namespace.yaml, crds.yaml, rbac.yaml, one file per
            component, policies.yaml (when enabled), any local manifests,
            and the kustomization.yaml entry point listing them.
        """
        files: dict[str, bytes] = {
            "namespace.yaml": dump_objects(self._build_namespace(options)),
            "crds.yaml": dump_objects(self._build_crds(options)),
            RBAC_FILE: load_rbac(options.namespace),
        }
        for component in options.all_components:
            files[f"{component}.yaml"] = dump_objects(self._build_component(options, component))
        if options.network_policy:
            files["policies.yaml"] = dump_objects(self._build_network_policies(options))
        if options.manifests_path is not None:
            files.update(self._read_local_manifests(Path(options.manifests_path)))

        artifacts = ArtifactSet(ArtifactKind.INSTALL)
        for name, content in files.items():
            artifacts.add(f"{COMPONENTS_DIR}/{name}", content)
        artifacts.add(
            f"{COMPONENTS_DIR}/{KUSTOMIZATION_FILE}",
            dump_objects([self._build_kustomization(list(files))]),
        )
        logger.debug("rendered install manifests", files=len(artifacts), digest=artifacts.digest)
        return artifacts

    def _read_local_manifests(self, directory: Path) -> dict[str, bytes]:
        """Local YAML files; a file named like a generated one replaces it."""
        files = {}
        for path in sorted(directory.glob("*.yaml")):
            if path.name == KUSTOMIZATION_FILE:
                continue
            files[path.name] = path.read_bytes()
        return files

    def _labels(self, options: InstallOptions) -> dict[str, str]:
        return {
            "app.kubernetes.io/instance": options.namespace,
            "app.kubernetes.io/version": options.version,
        }

    def _build_kustomization(self, resources_: list[str]) -> dict[str, Any]:
        return {
            "apiVersion": KUSTOMIZATION_API_VERSION,
            "kind": "Kustomization",
            "resources": resources_,
        }

    def _build_namespace(self, options: InstallOptions) -> list[dict[str, Any]]:
        return [
            {
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": options.namespace, "labels": self._labels(options)},
            }
        ]

    def _build_crds(self, options: InstallOptions) -> list[dict[str, Any]]:
        """Minimal CRDs for every installed component's custom resources."""
        crds = []
        for component in options.all_components:
            for group, version, kind, plural in COMPONENT_CRDS.get(component, []):
                crds.append(
                    {
                        "apiVersion": "apiextensions.k8s.io/v1",
                        "kind": "CustomResourceDefinition",
                        "metadata": {
                            "name": f"{plural}.{group}",
                            "labels": self._labels(options),
                        },
                        "spec": {
                            "group": group,
                            "names": {
                                "kind": kind,
                                "listKind": f"{kind}List",
                                "plural": plural,
                                "singular": kind.lower(),
                            },
                            "scope": "Namespaced",
                            "versions": [
                                {
                                    "name": version,
                                    "served": True,
                                    "storage": True,
                                    "schema": {
                                        "openAPIV3Schema": {
                                            "type": "object",
                                            "x-kubernetes-preserve-unknown-fields": True,
                                        }
                                    },
                                    "subresources": {"status": {}},
                                }
                            ],
                        },
                    }
                )
        return crds

    def _controller_args(self, options: InstallOptions, component: str) -> list[str]:
        args = []
        if options.events_address and component != options.notification_controller:
            args.append(f"--events-addr={options.events_address}")
        args += [
            f"--watch-all-namespaces={'true' if options.watch_all_namespaces else 'false'}",
            f"--log-level={options.log_level}",
            "--log-encoding=json",
            "--enable-leader-election",
        ]
        if component == "source-controller":
            args += [
                "--storage-path=/data",
                "--storage-adv-addr=source-controller.$(RUNTIME_NAMESPACE)"
                f".svc.{options.cluster_domain}.",
            ]
        return args

    def _build_component(self, options: InstallOptions, component: str) -> list[dict[str, Any]]:
        """ServiceAccount, Deployment and (where served) Service of one controller."""
        labels = {**self._labels(options), "control-plane": "controller"}
        service_account = {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": component, "namespace": options.namespace, "labels": labels},
        }

        container: dict[str, Any] = {
            "name": "manager",
            "image": f"{options.registry}/{component}:{options.version}",
            "imagePullPolicy": "IfNotPresent",
            "args": self._controller_args(options, component),
            "env": [
                {
                    "name": "RUNTIME_NAMESPACE",
                    "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}},
                }
            ],
            "ports": [
                {"containerPort": 8080, "name": "http-prom"},
                {"containerPort": 9440, "name": "healthz"},
            ],
            "livenessProbe": {"httpGet": {"path": "/healthz", "port": "healthz"}},
            "readinessProbe": {"httpGet": {"path": "/readyz", "port": "healthz"}},
            "securityContext": {
                "allowPrivilegeEscalation": False,
                "readOnlyRootFilesystem": True,
            },
            "volumeMounts": [{"name": "temp", "mountPath": "/tmp"}],
        }
        volumes: list[dict[str, Any]] = [{"name": "temp", "emptyDir": {}}]
        if component == "source-controller":
            container["ports"].append({"containerPort": 9090, "name": "http"})
            container["volumeMounts"].append({"name": "data", "mountPath": "/data"})
            volumes.append({"name": "data", "emptyDir": {}})
        elif component == options.notification_controller:
            container["ports"] += [
                {"containerPort": 9090, "name": "http"},
                {"containerPort": 9292, "name": "http-webhook"},
            ]

        pod_spec: dict[str, Any] = {
            "serviceAccountName": component,
            "terminationGracePeriodSeconds": 10,
            "nodeSelector": {"kubernetes.io/os": "linux"},
            "containers": [container],
            "volumes": volumes,
        }
        if options.image_pull_secret:
            pod_spec["imagePullSecrets"] = [{"name": options.image_pull_secret}]
        if options.toleration_keys:
            pod_spec["tolerations"] = [
                {"key": key, "operator": "Exists"} for key in options.toleration_keys
            ]

        deployment = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": component, "namespace": options.namespace, "labels": labels},
            "spec": {
                "replicas": 1,
                "selector": {"matchLabels": {"app": component}},
                "template": {
                    "metadata": {
                        "labels": {"app": component},
                        "annotations": {
                            "prometheus.io/port": "8080",
                            "prometheus.io/scrape": "true",
                        },
                    },
                    "spec": pod_spec,
                },
            },
        }

        objects = [service_account, deployment]
        if component == "source-controller":
            objects.append(self._build_service(options, component, component, "http"))
        elif component == options.notification_controller:
            objects.append(self._build_service(options, component, component, "http"))
            objects.append(self._build_service(options, "webhook-receiver", component, "http-webhook"))
        return objects

    def _build_service(
        self, options: InstallOptions, name: str, app: str, target_port: str
    ) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": name,
                "namespace": options.namespace,
                "labels": {**self._labels(options), "control-plane": "controller"},
            },
            "spec": {
                "type": "ClusterIP",
                "selector": {"app": app},
                "ports": [{"name": "http", "port": 80, "protocol": "TCP", "targetPort": target_port}],
            },
        }

    def _build_network_policies(self, options: InstallOptions) -> list[dict[str, Any]]:
        """Deny ingress except from the namespace itself, metrics and webhooks."""

        def policy(name: str, spec: dict[str, Any]) -> dict[str, Any]:
            return {
                "apiVersion": "networking.k8s.io/v1",
                "kind": "NetworkPolicy",
                "metadata": {
                    "name": name,
                    "namespace": options.namespace,
                    "labels": self._labels(options),
                },
                "spec": spec,
            }

        return [
            policy(
                "deny-ingress",
                {
                    "podSelector": {},
                    "policyTypes": ["Ingress", "Egress"],
                    "ingress": [{"from": [{"podSelector": {}}]}],
                    "egress": [{}],
                },
            ),
            policy(
                "allow-scraping",
                {
                    "podSelector": {},
                    "policyTypes": ["Ingress"],
                    "ingress": [
                        {
                            "from": [{"namespaceSelector": {}}],
                            "ports": [{"port": 8080, "protocol": "TCP"}],
                        }
                    ],
                },
            ),
            policy(
                "allow-webhooks",
                {
                    "podSelector": {"matchLabels": {"app": options.notification_controller}},
                    "policyTypes": ["Ingress"],
                    "ingress": [{"from": [{"namespaceSelector": {}}]}],
                },
            ),
        ]

    # ── sync pointer ──

    def render_sync(self, options: SyncOptions) -> ArtifactSet:
        """Render gotk-sync.yaml and the entry point that ties it to the components."""
        artifacts = ArtifactSet(ArtifactKind.SYNC)
        artifacts.add(SYNC_FILE, dump_objects(self._build_sync(options)))
        artifacts.add(
            KUSTOMIZATION_FILE,
            dump_objects([self._build_kustomization([COMPONENTS_DIR, SYNC_FILE])]),
        )
        logger.debug("rendered sync manifests", url=options.url, digest=artifacts.digest)
        return artifacts

    def _build_sync(self, options: SyncOptions) -> list[dict[str, Any]]:
        source_spec: dict[str, Any] = {
            "interval": format_duration(options.interval),
            "ref": {"branch": options.branch},
            "secretRef": {"name": options.secret_name},
            "url": options.url,
        }
        if options.recurse_submodules:
            source_spec["recurseSubmodules"] = True
        target = options.target_path.strip("/")
        return [
            {
                "apiVersion": SOURCE_API_VERSION,
                "kind": "GitRepository",
                "metadata": {"name": options.name, "namespace": options.namespace},
                "spec": source_spec,
            },
            {
                "apiVersion": KUSTOMIZE_API_VERSION,
                "kind": "Kustomization",
                "metadata": {"name": options.name, "namespace": options.namespace},
                "spec": {
                    "interval": format_duration(600),
                    "path": f"./{target}" if target else "./",
                    "prune": True,
                    "sourceRef": {"kind": "GitRepository", "name": options.name},
                    "validation": "client",
                },
            },
        ]

    # ── credential secret ──

    def build_secret(self, bundle: CredentialBundle, options: SecretOptions) -> dict[str, Any]:
        """The Secret object holding ``bundle`` under its fixed keys."""
        metadata: dict[str, Any] = {"name": options.name, "namespace": options.namespace}
        if options.labels:
            metadata["labels"] = dict(sorted(options.labels.items()))
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": metadata,
            "stringData": dict(sorted(bundle.secret_data().items())),
        }
