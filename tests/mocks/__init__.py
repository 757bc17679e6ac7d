"""Test mocks for driftless.

Provides fake implementations for testing:
- FakeEnvironmentClient: in-memory environment with instantly ready controllers
- FakeRemote / RecordingDriver: remote branch and working copy without git
- FakeProvider: hosting provider that records its calls
- FakeClock: clock driven by its own sleep()
"""

from .fakes import (
    HOST_KEYS,
    Commit,
    FakeClock,
    FakeEnvironmentClient,
    FakeProvider,
    FakeRemote,
    RecordingDriver,
)

__all__ = [
    "HOST_KEYS",
    "Commit",
    "FakeClock",
    "FakeEnvironmentClient",
    "FakeProvider",
    "FakeRemote",
    "RecordingDriver",
]
