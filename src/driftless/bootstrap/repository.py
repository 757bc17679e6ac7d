"""Repository driver abstraction.

A RepositoryDriver owns exactly one working copy of a remote repository for
the duration of a bootstrap run. Backends (the shell-delegated git driver in
gitcli.py, or anything else) implement the same capability set so the
orchestrator never depends on how the repository is reached.

Drivers never retry. Transient failures are raised as-is so that the
orchestrator applies one uniform backoff policy to every remote operation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath

from ..errors import RepositoryError
from .options import AuthMethod


class HandleState(Enum):
    """Lifecycle of a working copy."""

    NEW = "new"
    INITIALIZED = "initialized"  # Fresh local repository, nothing on the remote yet
    CLONED = "cloned"
    CLOSED = "closed"


@dataclass
class RepositoryHandle:
    """Local working copy bound to a remote URL."""

    path: Path
    url: str = ""
    branch: str = ""
    auth: AuthMethod = AuthMethod.NONE
    state: HandleState = HandleState.NEW

    @property
    def is_open(self) -> bool:
        return self.state in (HandleState.INITIALIZED, HandleState.CLONED)


def safe_relative_path(path: str) -> PurePosixPath:
    """Reject absolute paths and parent traversal in tree entries."""
    rel = PurePosixPath(path)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        raise RepositoryError(f"path '{path}' must be relative to the repository root")
    return rel


class RepositoryDriver(ABC):
    """Capability set over a single working copy."""

    def __init__(self, handle: RepositoryHandle):
        self.handle = handle

    @property
    def path(self) -> Path:
        return self.handle.path

    @abstractmethod
    def ensure_open(self, url: str, branch: str) -> bool:
        """Clone ``branch`` of ``url``, or initialize a fresh repository.

        An empty remote, or a remote without ``branch``, is the expected
        first-bootstrap case and falls back to local initialization.

        Returns:
            True if a fresh repository was initialized, False if cloned.
        """

    @abstractmethod
    def write_tree(self, files: Iterable[tuple[str, bytes]], prefix: str = "") -> None:
        """Write (relative path, content) pairs into the working copy."""

    @abstractmethod
    def commit_if_changed(self, author_name: str, author_email: str, message: str) -> str:
        """Stage the whole tree and commit it if it differs from HEAD.

        Returns:
            The new revision.

        Raises:
            NoChangesError: nothing to commit; carries the current HEAD.
        """

    @abstractmethod
    def push(self) -> None:
        """Push the current branch to the remote."""

    @abstractmethod
    def refresh(self) -> None:
        """Re-fetch the remote branch and reset the working copy onto it."""

    @abstractmethod
    def head_revision(self) -> str:
        """Return the revision HEAD points at."""

    @abstractmethod
    def is_clean(self) -> bool:
        """Return True when the working tree has no committable changes."""

    @abstractmethod
    def has_unpushed_commits(self) -> bool:
        """Return True when HEAD holds commits the remote branch does not."""

    def close(self) -> None:
        """Release the working copy."""
        self.handle.state = HandleState.CLOSED

    def __enter__(self) -> RepositoryDriver:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self.handle.is_open:
            raise RepositoryError("no git repository is open")
