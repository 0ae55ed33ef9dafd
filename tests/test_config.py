"""Tests for configuration loading and the CLI config builder."""

import argparse
import tempfile
from pathlib import Path

import pytest

from devfactory_oracle.config import Config, OracleConfig, load_oracle_config
from devfactory_oracle.main import build_config


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def cli_args(**overrides) -> argparse.Namespace:
    values = {"config": None, "project_root": None, "poll_interval": None, "persist_path": None}
    values.update(overrides)
    return argparse.Namespace(**values)


class TestConfig:
    """Tests for the YAML-backed Config."""

    def test_dotted_get(self, temp_dir):
        path = temp_dir / "oracle.yaml"
        path.write_text("stuck_detector:\n  task_timeout_ms: 600000\n")
        config = Config(path)

        assert config.get("stuck_detector.task_timeout_ms") == 600000
        assert config.get("stuck_detector.missing", "fallback") == "fallback"
        assert config.get("poll_interval_seconds") is None

    def test_section_ignores_scalars(self, temp_dir):
        path = temp_dir / "oracle.yaml"
        path.write_text("takeover: 3\n")
        assert Config(path).section("takeover") == {}

    def test_empty_file(self, temp_dir):
        path = temp_dir / "oracle.yaml"
        path.write_text("")
        assert Config(path).config == {}


class TestLoadOracleConfig:
    """Tests for building OracleConfig from YAML."""

    def test_defaults(self):
        config = OracleConfig()

        assert config.poll_interval_seconds == 30.0
        assert config.persist_path is None
        assert config.stuck_detector.no_progress_threshold_ms == 300000
        assert config.stuck_detector.repeated_error_threshold == 3
        assert config.stuck_detector.task_timeout_ms == 1800000
        assert config.stuck_detector.activity_window_ms == 120000
        assert config.takeover.max_attempts == 3
        assert config.store.lock_retries == 5

    def test_full_file(self, temp_dir):
        path = temp_dir / "oracle.yaml"
        path.write_text(
            "project_root: /srv/app\n"
            "poll_interval_seconds: 5\n"
            "persist_path: /var/lib/oracle/interventions.json\n"
            "stuck_detector:\n"
            "  no_progress_threshold_ms: 60000\n"
            "  repeated_error_threshold: 5\n"
            "takeover:\n"
            "  max_attempts: 1\n"
            "store:\n"
            "  stale_after_seconds: 30\n"
        )
        config = load_oracle_config(path)

        assert config.project_root == Path("/srv/app")
        assert config.poll_interval_seconds == 5.0
        assert config.persist_path == Path("/var/lib/oracle/interventions.json")
        assert config.stuck_detector.no_progress_threshold_ms == 60000
        assert config.stuck_detector.repeated_error_threshold == 5
        assert config.stuck_detector.task_timeout_ms == 1800000
        assert config.takeover.max_attempts == 1
        assert config.store.stale_after_seconds == 30

    def test_unknown_keys_ignored(self, temp_dir):
        path = temp_dir / "oracle.yaml"
        path.write_text("stuck_detector:\n  sensitivity: high\n  task_timeout_ms: 1000\n")
        config = load_oracle_config(path)
        assert config.stuck_detector.task_timeout_ms == 1000

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_oracle_config(temp_dir / "absent.yaml")


class TestBuildConfig:
    """Tests for merging CLI arguments over file configuration."""

    def test_default_persist_path_under_project(self, temp_dir):
        config = build_config(cli_args(project_root=str(temp_dir)))

        assert config.project_root == temp_dir
        assert config.persist_path == temp_dir / ".devfactory" / "oracle" / "interventions.json"

    def test_cli_overrides_file(self, temp_dir):
        path = temp_dir / "oracle.yaml"
        path.write_text("poll_interval_seconds: 5\npersist_path: from-file.json\n")
        config = build_config(cli_args(
            config=str(path), poll_interval=1.5, persist_path=str(temp_dir / "cli.json")
        ))

        assert config.poll_interval_seconds == 1.5
        assert config.persist_path == temp_dir / "cli.json"

    def test_file_values_kept_without_cli(self, temp_dir):
        path = temp_dir / "oracle.yaml"
        path.write_text("poll_interval_seconds: 5\npersist_path: from-file.json\n")
        config = build_config(cli_args(config=str(path)))

        assert config.poll_interval_seconds == 5.0
        assert config.persist_path == Path("from-file.json")
