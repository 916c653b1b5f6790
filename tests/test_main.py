"""Tests for the build-checkpoint command line."""

from __future__ import annotations

import json
import sys

import pytest

from build_checkpoint import main
from build_checkpoint.blobstore import LocalBlobStore
from build_checkpoint.exceptions import TransferFailure
from build_checkpoint.logging import logger
from build_checkpoint.manifest import build_manifest, publish_manifest


@pytest.fixture(autouse=True)
def restore_default_sink():
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in ("BUILD_CHECKPOINT_PASSWORD", "BUILD_CHECKPOINT_BASE_NAME", "BUILD_CHECKPOINT_STORE_URL"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"store_dir": str(tmp_path / "store"), "base_name": "nightly"}))
    return path


@pytest.fixture
def mock_orchestrator(mocker):
    orchestrator_cls = mocker.patch("build_checkpoint.main.CheckpointOrchestrator")
    return orchestrator_cls.from_config.return_value


def run_cli(settings_file, *args):
    return main.main(["--no-log-files", "--settings", str(settings_file), *args])


class TestParser:
    """Tests for argument parsing."""

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.main([])

    def test_create_requires_paths(self, tmp_path):
        with pytest.raises(SystemExit):
            main.main(["create", "--working-dir", str(tmp_path)])


class TestCommands:
    """Tests for dispatching subcommands."""

    def test_create(self, settings_file, mock_orchestrator, tmp_path, capsys):
        mock_orchestrator.create_checkpoint.return_value = "nightly-manifest"

        exit_code = run_cli(
            settings_file, "create", "--working-dir", str(tmp_path), "--volume-size", "1G", "src", "out"
        )

        assert exit_code == 0
        mock_orchestrator.create_checkpoint.assert_called_once_with(["src", "out"], tmp_path)
        assert capsys.readouterr().out.strip() == "nightly-manifest"
        config = main.CheckpointOrchestrator.from_config.call_args[0][0]
        assert config.base_name == "nightly"
        assert config.volume_size == "1G"

    def test_base_name_flag_overrides_settings(self, settings_file, mock_orchestrator, tmp_path):
        run_cli(settings_file, "restore", "--working-dir", str(tmp_path), "--base-name", "weekly")

        config = main.CheckpointOrchestrator.from_config.call_args[0][0]
        assert config.base_name == "weekly"
        mock_orchestrator.restore_checkpoint.assert_called_once_with(tmp_path)

    def test_cleanup(self, settings_file, mock_orchestrator):
        mock_orchestrator.cleanup_previous.return_value = 41

        assert run_cli(settings_file, "cleanup") == 0
        mock_orchestrator.cleanup_previous.assert_called_once_with()

    def test_checkpoint_error_exits_1(self, settings_file, mock_orchestrator, tmp_path):
        mock_orchestrator.restore_checkpoint.side_effect = TransferFailure("network down")

        assert run_cli(settings_file, "restore", "--working-dir", str(tmp_path)) == 1

    def test_invalid_configuration_exits_2(self, settings_file, mock_orchestrator, tmp_path):
        exit_code = run_cli(
            settings_file, "create", "--working-dir", str(tmp_path), "--volume-size", "huge", "src"
        )

        assert exit_code == 2
        mock_orchestrator.create_checkpoint.assert_not_called()


class TestManifestCommand:
    """Tests for printing the current manifest."""

    def test_prints_manifest(self, settings_file, tmp_path, capsys):
        manifest = build_manifest("nightly", ["nightly-vol001"], "5G", paths=["src"])
        publish_manifest(manifest, LocalBlobStore(tmp_path / "store"), tmp_path / "out", attempts=1, delay=0)

        assert run_cli(settings_file, "manifest") == 0

        printed = json.loads(capsys.readouterr().out)
        assert printed == manifest.to_dict()

    def test_missing_manifest_exits_1(self, settings_file):
        assert run_cli(settings_file, "manifest") == 1

    def test_corrupt_manifest_exits_1(self, settings_file, tmp_path, capsys):
        store_dir = tmp_path / "store"
        store_dir.mkdir()
        (store_dir / "nightly-manifest").write_text(
            json.dumps(
                {
                    "baseName": "nightly",
                    "volumeCount": 1,
                    "volumes": ["../escape"],
                    "createdAt": "2026-01-01T00:00:00+00:00",
                    "volumeSizeNominal": "5G",
                }
            )
        )

        assert run_cli(settings_file, "manifest") == 1
        assert capsys.readouterr().out == ""
