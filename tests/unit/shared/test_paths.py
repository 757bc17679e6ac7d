"""Unit tests for driftless.shared.paths module."""

from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest

from driftless.config import load_config, save_config


@pytest.mark.cli_unit
class TestPaths:
    """Tests for path constants."""

    def test_driftless_dir_is_in_home(self):
        """Test DRIFTLESS_DIR is in user's home directory."""
        from driftless.shared.paths import DRIFTLESS_DIR

        assert DRIFTLESS_DIR == Path.home() / ".driftless"

    def test_config_file_location(self):
        """Test CONFIG_FILE is in DRIFTLESS_DIR."""
        from driftless.shared.paths import CONFIG_FILE, DRIFTLESS_DIR

        assert CONFIG_FILE == DRIFTLESS_DIR / "config.yaml"


@pytest.mark.cli_unit
class TestEnsureDirs:
    """Tests for ensure_dirs function."""

    def test_ensure_dirs_creates_directory(self):
        """Test ensure_dirs creates the data directory with 0o700."""
        with TemporaryDirectory() as tmpdir:
            test_dir = Path(tmpdir) / ".driftless"

            with patch("driftless.shared.paths.DRIFTLESS_DIR", test_dir):
                from driftless.shared.paths import ensure_dirs

                assert not test_dir.exists()
                ensure_dirs()

                assert test_dir.exists()
                assert (test_dir.stat().st_mode & 0o777) == 0o700

    def test_ensure_dirs_idempotent(self):
        """Test ensure_dirs can be called multiple times."""
        with TemporaryDirectory() as tmpdir:
            test_dir = Path(tmpdir) / ".driftless"

            with patch("driftless.shared.paths.DRIFTLESS_DIR", test_dir):
                from driftless.shared.paths import ensure_dirs

                ensure_dirs()
                ensure_dirs()

                assert test_dir.exists()

    def test_default_config_file_created_under_data_dir(self, monkeypatch):
        """Test saving to the default config file creates the data directory."""
        monkeypatch.delenv("DRIFTLESS_NAMESPACE", raising=False)
        with TemporaryDirectory() as tmpdir:
            test_dir = Path(tmpdir) / ".driftless"
            config_file = test_dir / "config.yaml"

            with (
                patch("driftless.shared.paths.DRIFTLESS_DIR", test_dir),
                patch("driftless.config.CONFIG_FILE", config_file),
            ):
                save_config("namespace", "gitops")

                assert (test_dir.stat().st_mode & 0o777) == 0o700
                assert load_config().namespace == "gitops"
