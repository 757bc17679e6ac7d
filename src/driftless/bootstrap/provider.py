"""Repository hosting provider clients.

Only two operations are needed from a hosting provider during bootstrap:
make sure the repository exists, and make sure the generated public key is
registered as a read-only deploy key. Both are idempotent and report whether
they changed anything.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

import httpx

from ..errors import AuthenticationError, ProviderError, TransientNetworkError
from ..shared.logging import get_logger

logger = get_logger(__name__)

GITHUB_DEFAULT_HOST = "github.com"
GITLAB_DEFAULT_HOST = "gitlab.com"


def _key_material(key: str) -> str:
    """``<type> <base64>`` without the trailing comment."""
    return " ".join(key.split()[:2])


def deploy_key_label(namespace: str, target_path: str = "") -> str:
    """Deploy key title: ``flux-<namespace>[-<path>]``."""
    label = f"flux-{namespace}"
    path = target_path.strip("/")
    if path:
        label = f"{label}-{path.replace('/', '-')}"
    return label


class Provider(ABC):
    """Hosting provider REST client."""

    def __init__(self, token: str, hostname: str, base_url: str, timeout: float = 30.0,
                 transport: httpx.BaseTransport | None = None):
        """Initialize provider client.

        Args:
            token: API token.
            hostname: Git host name used for clone URLs and host key scans.
            base_url: REST API root.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, mostly for tests.
        """
        self.hostname = hostname
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=self._headers(token),
            transport=transport,
        )

    @abstractmethod
    def _headers(self, token: str) -> dict[str, str]:
        """Authentication and content headers."""

    @abstractmethod
    def ensure_repository_exists(self, owner: str, name: str, private: bool = True,
                                 personal: bool = False) -> bool:
        """Create the repository if missing. Returns True if it was created."""

    @abstractmethod
    def register_deploy_key(self, owner: str, name: str, public_key: str, label: str) -> bool:
        """Register ``public_key`` under ``label``. Returns True if anything changed."""

    def clone_url(self, owner: str, name: str, ssh: bool = True) -> str:
        if ssh:
            return f"ssh://git@{self.hostname}/{owner}/{name}"
        return f"https://{self.hostname}/{owner}/{name}.git"

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> Provider:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> Any:
        """Make an API request.

        Returns:
            Decoded JSON body, or None for an empty body or an allowed 404.

        Raises:
            AuthenticationError: on 401/403.
            TransientNetworkError: on transport errors, timeouts, 429 and 5xx.
            ProviderError: on any other error status.
        """
        try:
            response = self._client.request(method, path, json=json, params=params)
        except httpx.ConnectError as e:
            raise TransientNetworkError(f"cannot connect to {self.base_url}: {e}") from e
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"request to {self.base_url} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"request to {self.base_url} failed: {e}") from e

        status = response.status_code
        if status == 404 and allow_404:
            return None
        if status >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("message", response.text) if isinstance(body, dict) else response.text
            message = f"{method} {path} failed ({status}): {detail}"
            if status in (401, 403):
                raise AuthenticationError(message, data={"status": status})
            if status == 429 or status >= 500:
                raise TransientNetworkError(message, data={"status": status})
            raise ProviderError(message, status_code=status)
        if not response.content:
            return None
        return response.json()


class GitHubProvider(Provider):
    """GitHub and GitHub Enterprise REST v3 client."""

    def __init__(self, token: str, hostname: str = "", timeout: float = 30.0,
                 transport: httpx.BaseTransport | None = None):
        hostname = hostname or GITHUB_DEFAULT_HOST
        if hostname == GITHUB_DEFAULT_HOST:
            base_url = "https://api.github.com"
        else:
            base_url = f"https://{hostname}/api/v3"
        super().__init__(token, hostname, base_url, timeout=timeout, transport=transport)

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
        }

    def ensure_repository_exists(self, owner: str, name: str, private: bool = True,
                                 personal: bool = False) -> bool:
        if self._request("GET", f"/repos/{owner}/{name}", allow_404=True) is not None:
            return False
        body = {"name": name, "private": private, "auto_init": True}
        path = "/user/repos" if personal else f"/orgs/{owner}/repos"
        self._request("POST", path, json=body)
        logger.info("repository created", owner=owner, repository=name, private=private)
        return True

    def register_deploy_key(self, owner: str, name: str, public_key: str, label: str) -> bool:
        keys_path = f"/repos/{owner}/{name}/keys"
        for key in self._request("GET", keys_path) or []:
            if key.get("title") != label:
                continue
            if _key_material(key.get("key", "")) == _key_material(public_key):
                return False
            # Same title, different key: replace it
            self._request("DELETE", f"{keys_path}/{key['id']}")
        self._request("POST", keys_path, json={"title": label, "key": public_key.strip(), "read_only": True})
        logger.info("deploy key registered", owner=owner, repository=name, label=label)
        return True


class GitLabProvider(Provider):
    """GitLab REST v4 client."""

    def __init__(self, token: str, hostname: str = "", timeout: float = 30.0,
                 transport: httpx.BaseTransport | None = None):
        hostname = hostname or GITLAB_DEFAULT_HOST
        super().__init__(token, hostname, f"https://{hostname}/api/v4", timeout=timeout,
                         transport=transport)

    def _headers(self, token: str) -> dict[str, str]:
        return {"PRIVATE-TOKEN": token}

    @staticmethod
    def _project_id(owner: str, name: str) -> str:
        return quote(f"{owner}/{name}", safe="")

    def ensure_repository_exists(self, owner: str, name: str, private: bool = True,
                                 personal: bool = False) -> bool:
        project = self._project_id(owner, name)
        if self._request("GET", f"/projects/{project}", allow_404=True) is not None:
            return False
        body: dict[str, Any] = {
            "name": name,
            "path": name,
            "visibility": "private" if private else "public",
            "initialize_with_readme": True,
        }
        if not personal:
            namespace = self._request("GET", f"/namespaces/{quote(owner, safe='')}")
            body["namespace_id"] = namespace["id"]
        self._request("POST", "/projects", json=body)
        logger.info("repository created", owner=owner, repository=name, private=private)
        return True

    def register_deploy_key(self, owner: str, name: str, public_key: str, label: str) -> bool:
        keys_path = f"/projects/{self._project_id(owner, name)}/deploy_keys"
        for key in self._request("GET", keys_path) or []:
            if key.get("title") != label:
                continue
            if _key_material(key.get("key", "")) == _key_material(public_key):
                return False
            self._request("DELETE", f"{keys_path}/{key['id']}")
        self._request("POST", keys_path, json={"title": label, "key": public_key.strip(), "can_push": False})
        logger.info("deploy key registered", owner=owner, repository=name, label=label)
        return True
