"""Shell-delegated git backend for RepositoryDriver.

Runs the ``git`` binary through subprocess, the same way the deployers drive
kubectl. Authentication is passed per invocation: basic credentials as an
HTTP Authorization header, private keys through GIT_SSH_COMMAND pointing at
a key file written outside the working copy.
"""

from __future__ import annotations

import base64
import os
import re
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Iterable
from pathlib import Path

from ..errors import (
    AuthenticationError,
    ConflictError,
    NoChangesError,
    RepositoryError,
    TransientNetworkError,
)
from ..shared.logging import get_logger
from .options import AuthMethod
from .repository import HandleState, RepositoryDriver, RepositoryHandle, safe_relative_path

logger = get_logger(__name__)

REMOTE_NAME = "origin"

_BRANCH_NOT_FOUND = re.compile(
    r"Remote branch .* not found|couldn't find remote ref|Could not find remote branch"
)
_AUTH_FAILED = re.compile(
    r"Authentication failed|Permission denied|could not read Username|"
    r"HTTP Basic: Access denied|returned error: 40[13]",
    re.IGNORECASE,
)
_REJECTED = re.compile(r"\[rejected\]|non-fast-forward|fetch first")
_REMOTE_DECLINED = re.compile(r"\[remote rejected\]|pre-receive hook declined|protected branch")
_NOT_A_REPOSITORY = re.compile(
    r"does not appear to be a git repository|Repository not found|returned error: 404",
    re.IGNORECASE,
)


class GitCLIDriver(RepositoryDriver):
    """RepositoryDriver backed by the git command line client."""

    def __init__(
        self,
        path: Path,
        auth: AuthMethod = AuthMethod.NONE,
        username: str = "",
        password: str = "",
        private_key: bytes | None = None,
        known_hosts: str = "",
        git_binary: str = "git",
        network_timeout: float | None = 120.0,
    ):
        """Initialize driver.

        Args:
            path: Working copy directory. Must be empty or absent.
            auth: Authentication method for remote operations.
            username: Basic auth username, or the SSH user.
            password: Basic auth password or token.
            private_key: Unencrypted private key for SSH auth.
            known_hosts: known_hosts content used to verify the SSH remote.
            git_binary: git executable to run.
            network_timeout: Timeout in seconds for clone, fetch and push.
        """
        super().__init__(RepositoryHandle(path=Path(path), auth=auth))
        self.username = username
        self.password = password
        self.private_key = private_key
        self.known_hosts = known_hosts
        self.git_binary = git_binary
        self.network_timeout = network_timeout
        self._secrets_dir: Path | None = None

    # ── plumbing ──

    def _auth_config(self) -> list[str]:
        if self.handle.auth is AuthMethod.BASIC and (self.username or self.password):
            token = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
            return ["-c", f"http.extraHeader=Authorization: Basic {token}"]
        return []

    def _env(self) -> dict[str, str]:
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        if self.handle.auth is AuthMethod.SSH and self.private_key:
            key_file, hosts_file = self._write_ssh_material()
            ssh = ["ssh", "-i", str(key_file), "-o", "IdentitiesOnly=yes"]
            if hosts_file:
                ssh += ["-o", f"UserKnownHostsFile={hosts_file}", "-o", "StrictHostKeyChecking=yes"]
            env["GIT_SSH_COMMAND"] = " ".join(shlex.quote(part) for part in ssh)
        return env

    def _write_ssh_material(self) -> tuple[Path, Path | None]:
        if self._secrets_dir is None:
            self._secrets_dir = Path(tempfile.mkdtemp(prefix="driftless-ssh-"))
        key_file = self._secrets_dir / "identity"
        if not key_file.exists():
            key_file.touch(mode=0o600)
            key_file.write_bytes(self.private_key or b"")
        hosts_file = None
        if self.known_hosts:
            hosts_file = self._secrets_dir / "known_hosts"
            hosts_file.write_text(self.known_hosts)
        return key_file, hosts_file

    def _git(
        self,
        *args: str,
        cwd: Path | None = None,
        network: bool = False,
        extra_env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess:
        cmd = [self.git_binary]
        if network:
            cmd += self._auth_config()
        cmd += list(args)
        env = self._env() if network else {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        if extra_env:
            env.update(extra_env)
        try:
            return subprocess.run(
                cmd,
                cwd=cwd or self.path,
                capture_output=True,
                text=True,
                env=env,
                timeout=self.network_timeout if network else None,
            )
        except FileNotFoundError as e:
            raise RepositoryError(f"{self.git_binary} not found. Is git installed?") from e
        except subprocess.TimeoutExpired as e:
            raise TransientNetworkError(
                f"git {args[0]} timed out after {self.network_timeout}s",
                data={"command": args[0]},
            ) from e

    def _check(self, result: subprocess.CompletedProcess, action: str) -> str:
        if result.returncode != 0:
            raise RepositoryError(
                f"git {action} failed: {result.stderr.strip()}",
                data={"returncode": result.returncode},
            )
        return result.stdout

    def _remote_error(self, result: subprocess.CompletedProcess, action: str):
        stderr = result.stderr.strip()
        data = {"action": action, "returncode": result.returncode}
        if _AUTH_FAILED.search(stderr):
            return AuthenticationError(f"git {action} failed: {stderr}", data=data)
        if _NOT_A_REPOSITORY.search(stderr):
            return RepositoryError(f"git {action} failed: {stderr}", data=data)
        return TransientNetworkError(f"git {action} failed: {stderr}", data=data)

    # ── capability set ──

    def ensure_open(self, url: str, branch: str) -> bool:
        if self.handle.is_open:
            return False

        self.handle.url = url
        self.handle.branch = branch
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists() and any(self.path.iterdir()):
            raise RepositoryError(f"working directory {self.path} is not empty")

        result = self._git(
            "clone",
            "--branch",
            branch,
            "--single-branch",
            "--no-tags",
            url,
            str(self.path),
            cwd=self.path.parent,
            network=True,
        )
        if result.returncode != 0:
            if not _BRANCH_NOT_FOUND.search(result.stderr):
                raise self._remote_error(result, "clone")
            logger.info("remote branch not found, initializing", url=url, branch=branch)
            shutil.rmtree(self.path, ignore_errors=True)
            return self._init(url, branch)

        if self._git("rev-parse", "--verify", "HEAD").returncode != 0:
            # Cloned an empty repository: point HEAD at the requested branch.
            logger.info("remote repository is empty", url=url, branch=branch)
            self._check(self._git("symbolic-ref", "HEAD", f"refs/heads/{branch}"), "symbolic-ref")
            self.handle.state = HandleState.INITIALIZED
            return True

        self.handle.state = HandleState.CLONED
        logger.debug("repository cloned", url=url, branch=branch, path=str(self.path))
        return False

    def _init(self, url: str, branch: str) -> bool:
        self.path.mkdir(parents=True, exist_ok=True)
        self._check(self._git("init", "--quiet", str(self.path)), "init")
        # HEAD has no commits yet, so it can be re-pointed at any branch name.
        self._check(self._git("symbolic-ref", "HEAD", f"refs/heads/{branch}"), "symbolic-ref")
        self._check(self._git("remote", "add", REMOTE_NAME, url), "remote add")
        self._check(self._git("config", f"branch.{branch}.remote", REMOTE_NAME), "config")
        self._check(self._git("config", f"branch.{branch}.merge", f"refs/heads/{branch}"), "config")
        self.handle.state = HandleState.INITIALIZED
        return True

    def write_tree(self, files: Iterable[tuple[str, bytes]], prefix: str = "") -> None:
        self._require_open()
        for rel_path, content in files:
            rel = safe_relative_path(f"{prefix.strip('/')}/{rel_path}" if prefix else rel_path)
            target = self.path.joinpath(*rel.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.is_file() and not target.is_symlink() and target.read_bytes() == content:
                continue
            target.write_bytes(content)

    def _changed_paths(self) -> list[str]:
        """Paths git reports as changed, minus broken symbolic links.

        A symlink whose target is missing is never committed: such entries
        show up as spurious changes when relative links point outside the
        checkout.
        """
        out = self._check(
            self._git("status", "--porcelain=v1", "-z", "--untracked-files=all"), "status"
        )
        entries = out.split("\0")
        changed: list[str] = []
        i = 0
        while i < len(entries):
            entry = entries[i]
            i += 1
            if len(entry) < 4:
                continue
            code, path = entry[:2], entry[3:]
            if code[0] in "RC":
                i += 1  # rename/copy source follows
            full = self.path / path
            if full.is_symlink() and not full.exists():
                continue
            changed.append(path)
        return changed

    def _head_or_empty(self) -> str:
        result = self._git("rev-parse", "--verify", "HEAD")
        return result.stdout.strip() if result.returncode == 0 else ""

    def commit_if_changed(self, author_name: str, author_email: str, message: str) -> str:
        self._require_open()
        changed = self._changed_paths()
        if not changed:
            raise NoChangesError(self._head_or_empty())

        self._check(
            self._git("add", "--all", "--", *changed, extra_env={"GIT_LITERAL_PATHSPECS": "1"}), "add"
        )
        if self._git("diff", "--cached", "--quiet").returncode == 0:
            raise NoChangesError(self._head_or_empty())

        identity = {
            "GIT_AUTHOR_NAME": author_name,
            "GIT_AUTHOR_EMAIL": author_email,
            "GIT_COMMITTER_NAME": author_name,
            "GIT_COMMITTER_EMAIL": author_email,
        }
        self._check(
            self._git("commit", "--quiet", "--no-verify", "-m", message, extra_env=identity),
            "commit",
        )
        revision = self.head_revision()
        logger.info("committed", revision=revision, files=len(changed))
        return revision

    def push(self) -> None:
        self._require_open()
        branch = self.handle.branch
        result = self._git(
            "push", REMOTE_NAME, f"HEAD:refs/heads/{branch}", network=True
        )
        if result.returncode == 0:
            self.handle.state = HandleState.CLONED
            logger.info("pushed", branch=branch)
            return
        if _REMOTE_DECLINED.search(result.stderr):
            raise RepositoryError(
                f"push to {branch} declined by the remote: {result.stderr.strip()}",
                data={"branch": branch},
            )
        if _REJECTED.search(result.stderr):
            raise ConflictError(
                f"push to {branch} rejected: {result.stderr.strip()}",
                data={"branch": branch},
            )
        raise self._remote_error(result, "push")

    def refresh(self) -> None:
        self._require_open()
        branch = self.handle.branch
        result = self._git("fetch", "--no-tags", REMOTE_NAME, branch, network=True)
        if result.returncode != 0:
            if _BRANCH_NOT_FOUND.search(result.stderr):
                self._reset_unborn()
                return
            raise self._remote_error(result, "fetch")
        self._check(self._git("reset", "--hard", "--quiet", "FETCH_HEAD"), "reset")
        self._check(self._git("clean", "-fd", "--quiet"), "clean")
        self.handle.state = HandleState.CLONED

    def _reset_unborn(self) -> None:
        """Drop local commits while the remote branch does not exist yet."""
        if self._head_or_empty():
            # HEAD stays symbolic, so deleting through it leaves the branch unborn.
            self._check(self._git("update-ref", "-d", "HEAD"), "update-ref")
        self._check(self._git("read-tree", "--empty"), "read-tree")
        self._check(self._git("clean", "-fdx", "--quiet"), "clean")
        self.handle.state = HandleState.INITIALIZED

    def head_revision(self) -> str:
        self._require_open()
        result = self._git("rev-parse", "--verify", "HEAD")
        if result.returncode != 0:
            raise RepositoryError("reference not found: HEAD has no commits")
        return result.stdout.strip()

    def is_clean(self) -> bool:
        self._require_open()
        return not self._changed_paths()

    def has_unpushed_commits(self) -> bool:
        self._require_open()
        head = self._head_or_empty()
        if not head:
            return False
        tracking = self._git(
            "rev-parse", "--verify", "--quiet", f"refs/remotes/{REMOTE_NAME}/{self.handle.branch}"
        )
        if tracking.returncode != 0:
            return True
        return tracking.stdout.strip() != head

    def close(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)
        if self._secrets_dir is not None:
            shutil.rmtree(self._secrets_dir, ignore_errors=True)
            self._secrets_dir = None
        super().close()
