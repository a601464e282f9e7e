"""Tests for collector settings and nodes file resolution."""

import logging

import pytest
import yaml

from edge_metrics_collector import (
    NodeAssignment,
    NodeConfigResolver,
    ProgramConfig,
    ProgramLogger,
    ProgramSource,
)


def _config_from(tmp_path, content=None):
    program = tmp_path / "edge_metrics_collector.py"
    if content is not None:
        (tmp_path / "edge_metrics_collector.yml").write_text(content)
    return ProgramConfig(ProgramSource(script_path=program))


class TestProgramConfig:

    def test_defaults_without_settings_file(self, tmp_path, logger, caplog):
        config = _config_from(tmp_path)
        with caplog.at_level(logging.INFO):
            config.logger = logger

        assert config.node_config_path.as_posix() == "/scripts/nodes.conf"
        assert config.script_timeout == 10
        assert config.interpreter == "/bin/bash"
        assert config.metric_prefix == "edge_"
        assert config.default_role == "default"
        assert config.default_interval == 15
        assert config.heartbeat_interval == 3600
        assert "No settings file found" in caplog.text

    def test_settings_override_defaults(self, tmp_path):
        settings = {
            "collector": {"scripts_dir": "/opt/probes", "script_timeout_sec": 2.5, "interpreter": ""},
            "logging": {"level": "debug"},
        }
        config = _config_from(tmp_path, yaml.safe_dump(settings))

        assert config.scripts_dir.as_posix() == "/opt/probes"
        assert config.script_timeout == 2.5
        assert config.interpreter is None
        assert config.logging["level"] == "DEBUG"
        # untouched keys keep their defaults
        assert config.textfile_path.name == "custom_metrics.prom"

    def test_invalid_values_fall_back_with_warning(self, tmp_path, logger, caplog):
        settings = {
            "collector": {
                "script_timeout_sec": -1,
                "metric_prefix": "9bad",
                "max_line_bytes": "big",
                "no_such_key": 1,
            }
        }
        config = _config_from(tmp_path, yaml.safe_dump(settings))
        with caplog.at_level(logging.WARNING):
            config.logger = logger

        assert config.script_timeout == ProgramConfig.DEFAULT_SCRIPT_TIMEOUT
        assert config.metric_prefix == ProgramConfig.DEFAULT_METRIC_PREFIX
        assert config.max_line_bytes == ProgramConfig.DEFAULT_MAX_LINE_BYTES
        assert "script_timeout_sec" in caplog.text
        assert "metric_prefix" in caplog.text
        assert "Ignoring unknown collector setting 'no_such_key'" in caplog.text

    def test_malformed_yaml_keeps_defaults(self, tmp_path, logger, caplog):
        config = _config_from(tmp_path, "collector: [unclosed\n")
        with caplog.at_level(logging.ERROR):
            config.logger = logger

        assert config.metric_prefix == "edge_"
        assert "Failed to load settings file" in caplog.text

    def test_undecodable_settings_keep_defaults(self, tmp_path, logger, caplog):
        (tmp_path / "edge_metrics_collector.yml").write_bytes(b"collector:\n  metric_prefix: \xff\xfe\n")
        config = _config_from(tmp_path)
        with caplog.at_level(logging.ERROR):
            config.logger = logger

        assert config.metric_prefix == "edge_"
        assert "Failed to load settings file" in caplog.text

    def test_settings_env_override(self, tmp_path, monkeypatch):
        custom = tmp_path / "elsewhere.yml"
        custom.write_text(yaml.safe_dump({"collector": {"default_role": "none"}}))
        monkeypatch.setenv("COLLECTOR_SETTINGS", str(custom))

        config = _config_from(tmp_path)
        assert config.default_role == "none"

    def test_node_name_from_environment(self, tmp_path, monkeypatch):
        config = _config_from(tmp_path)
        assert config.node_name == "unknown"

        monkeypatch.setenv("NODE_NAME", "edgeA")
        assert config.node_name == "edgeA"

        monkeypatch.setenv("NODE_NAME", "")
        assert config.node_name == "unknown"


class TestNodeConfigResolver:

    @pytest.fixture
    def resolver(self, make_config, logger):
        return NodeConfigResolver(make_config(), logger)

    def test_role_and_interval(self, resolver, write_nodes):
        write_nodes("nodeA=compute:30s")
        assert resolver.resolve("nodeA") == NodeAssignment("compute", 30.0)

    def test_no_match_returns_fallback(self, resolver, write_nodes):
        write_nodes("nodeA=compute:30s")
        assert resolver.resolve("nodeZ") == NodeAssignment("default", 15)

    def test_bad_duration_keeps_role(self, resolver, write_nodes, caplog):
        write_nodes("nodeB=compute:bogus")
        with caplog.at_level(logging.WARNING):
            assert resolver.resolve("nodeB") == NodeAssignment("compute", 15)
        assert "Invalid duration 'bogus' for node nodeB" in caplog.text

    def test_non_positive_duration_falls_back(self, resolver, write_nodes):
        write_nodes("nodeB=compute:0s", "nodeC=compute:-5m")
        assert resolver.resolve("nodeB") == NodeAssignment("compute", 15)
        assert resolver.resolve("nodeC") == NodeAssignment("compute", 15)

    def test_role_without_interval(self, resolver, write_nodes):
        write_nodes("nodeA=gateway")
        assert resolver.resolve("nodeA") == NodeAssignment("gateway", 15)

    def test_only_first_colon_splits(self, resolver, write_nodes):
        write_nodes("nodeA=compute:1m:extra")
        assert resolver.resolve("nodeA") == NodeAssignment("compute", 15)

    def test_first_match_wins_and_noise_is_skipped(self, resolver, write_nodes):
        write_nodes(
            "# fleet layout",
            "",
            "not a mapping line",
            "  nodeA = sensors:5m  ",
            "nodeA=compute:10s",
        )
        assert resolver.resolve("nodeA") == NodeAssignment("sensors", 300.0)

    def test_commented_entry_is_ignored(self, resolver, write_nodes):
        write_nodes("#nodeA=compute:10s")
        assert resolver.resolve("nodeA") == NodeAssignment("default", 15)

    def test_missing_file_returns_fallback(self, resolver, caplog):
        with caplog.at_level(logging.WARNING):
            assert resolver.resolve("nodeA") == NodeAssignment("default", 15)
        assert "Cannot read nodes file" in caplog.text


class TestProgramLogger:

    def test_console_and_file_handlers(self, tmp_path):
        log_file = tmp_path / "logs" / "sidecar.log"
        program = tmp_path / "sidecar.py"
        settings = {"logging": {"level": "VERBOSE", "file": str(log_file)}}
        (tmp_path / "sidecar.yml").write_text(yaml.safe_dump(settings))

        source = ProgramSource(script_path=program)
        config = ProgramConfig(source)
        program_logger = ProgramLogger(source, config)
        try:
            log = program_logger.logger
            assert set(program_logger.handlers) == {"console", "file"}
            assert config.logger is log

            log.verbose(lambda: "deferred verbose message")
            for handler in log.handlers:
                handler.flush()

            content = log_file.read_text()
            assert "[VERBOSE] deferred verbose message" in content
            assert "Loaded settings from" in content
        finally:
            program_logger.close()
