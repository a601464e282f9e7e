"""Shared fixtures: isolated settings, loggers and probe scripts."""

import logging
import os
from pathlib import Path

import pytest
import yaml

from edge_metrics_collector import ProgramConfig, ProgramLogger, ProgramSource


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the host's systemd and node settings out of the tests."""
    for name in ("INVOCATION_ID", "NODE_NAME", "COLLECTOR_SETTINGS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def logger(request):
    """A VerboseLogger that propagates to the root logger for caplog."""
    ProgramLogger.register_verbose_level()
    log = logging.getLogger(f"edge_metrics_collector.tests.{request.node.name}")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def scripts_dir(tmp_path):
    path = tmp_path / "scripts"
    path.mkdir()
    return path


@pytest.fixture
def textfile_path(tmp_path):
    return tmp_path / "textfile" / "custom_metrics.prom"


@pytest.fixture
def make_config(tmp_path, scripts_dir, textfile_path, logger):
    """Build a ProgramConfig from a settings file written to tmp_path."""

    def _make(**collector):
        settings = {
            "collector": {
                "node_config_path": str(scripts_dir / "nodes.conf"),
                "scripts_dir": str(scripts_dir),
                "textfile_path": str(textfile_path),
                **collector,
            }
        }
        program = tmp_path / "edge_metrics_collector.py"
        (tmp_path / "edge_metrics_collector.yml").write_text(yaml.safe_dump(settings))
        config = ProgramConfig(ProgramSource(script_path=program))
        config.logger = logger
        return config

    return _make


@pytest.fixture
def write_script(scripts_dir):
    """Write an executable probe script for a role."""

    def _write(role: str, body: str) -> Path:
        path = scripts_dir / f"{role}.sh"
        path.write_text("#!/bin/bash\n" + body + "\n")
        os.chmod(path, 0o755)
        return path

    return _write


@pytest.fixture
def write_nodes(scripts_dir):
    """Write the nodes file."""

    def _write(*lines: str) -> Path:
        path = scripts_dir / "nodes.conf"
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write
