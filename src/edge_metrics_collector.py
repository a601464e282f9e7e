#!/usr/bin/env python3

"""
Edge Metrics Collector

Description:
---------------------

A per-node metrics sidecar for node_exporter's textfile collector:
- Resolves the node's role and collection interval from a shared nodes file
- Runs the role's probe script on a fixed cadence under a hard timeout
- Parses `key=value` probe output into Prometheus gauges
- Publishes each cycle's snapshot atomically (temp file + rename)
- Idles with an hourly heartbeat on nodes that have nothing to report

Usage:
---------------------
1. Mount the nodes file (default /scripts/nodes.conf) and the probe scripts
   (default /scripts/<role>.sh)
2. Export NODE_NAME with the logical name of the current node
3. Run `edge-metrics-collector` (or this module directly)
4. Point node_exporter's --collector.textfile.directory at the directory of
   the snapshot file (default /var/lib/node_exporter_textfile)

Nodes File:
---------------------

    # identity=role[:interval]
    edge-01=sensors:10s
    edge-02=gateway:1m
    edge-03=sensors          # interval defaults to 15s

Settings:
---------------------

An optional YAML file next to the program (<name>.yml), or the path given in
COLLECTOR_SETTINGS. Every key is optional.

collector:
    node_config_path: /scripts/nodes.conf
    scripts_dir: /scripts
    script_extension: .sh
    interpreter: /bin/bash      # empty string executes the probe directly
    script_timeout_sec: 10
    max_line_bytes: 65536
    textfile_path: /var/lib/node_exporter_textfile/custom_metrics.prom
    metric_prefix: edge_
    default_role: default
    default_interval_sec: 15
    heartbeat_interval_sec: 3600
logging:
    level: "INFO"
    console_level: "INFO"
    file_level: "DEBUG"
    journal_level: "WARNING"
    file: null                  # path of a rotating log file, disabled if unset
    max_bytes: 10485760
    backup_count: 3

Probe Output:
---------------------

    # comments and blank lines are ignored
    temp=42.5
    humidity=55

Each line becomes `edge_<sanitized key>{node="<NODE_NAME>"} <value>`. Lines
whose value is not a number are skipped. A non-zero exit status is logged but
the lines read before it are still published.

Dependencies:
---------------------
- Python 3.11+
- prometheus_client
- pyyaml
- cysystemd (for systemd integration)

Notes:
---------------------
- The nodes file and settings are read once at startup
- Nothing in a single cycle is fatal; failures are logged and the previous
  snapshot stays in place until the next successful publish
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import logging
import os
import re
import signal
import sys
import tempfile
import time
from collections import OrderedDict
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterator, List, Optional, Union
)

# Third party imports
from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricError(Exception):
    """Base class for metric-related errors."""
    pass

class MetricConfigurationError(MetricError):
    """Error in collector or node configuration."""
    pass

class DurationParseError(MetricConfigurationError, ValueError):
    """Interval text could not be parsed as a duration."""
    pass

class MetricCollectionError(MetricError):
    """Error while running a probe script."""
    pass

class ScriptTimeoutError(MetricCollectionError):
    """Probe script exceeded its execution budget."""
    pass

class PublishError(MetricError):
    """Snapshot could not be written to the textfile directory."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Enums and Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file locations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())

    SETTINGS_ENV = 'COLLECTOR_SETTINGS'

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension."""
        return self.script_path.stem

    @property
    def logger_name(self) -> str:
        """Logger name derived from script name."""
        return self.base_name

    @property
    def settings_path(self) -> Optional[Path]:
        """Settings file, or None when the collector runs on defaults.

        COLLECTOR_SETTINGS wins over the file next to the script and is
        returned even if it does not exist, so the failure gets logged.
        """
        override = os.getenv(self.SETTINGS_ENV)
        if override:
            return Path(override)

        path = self.script_dir / f"{self.base_name}.yml"
        if path.is_file():
            return path
        return None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Collector settings with defaults and optimistic validation."""

    # Default values as class attributes
    DEFAULT_NODE_NAME = 'unknown'
    DEFAULT_NODE_CONFIG_PATH = '/scripts/nodes.conf'
    DEFAULT_SCRIPTS_DIR = '/scripts'
    DEFAULT_SCRIPT_EXTENSION = '.sh'
    DEFAULT_INTERPRETER = '/bin/bash'
    DEFAULT_SCRIPT_TIMEOUT = 10
    DEFAULT_MAX_LINE_BYTES = 65536
    DEFAULT_TEXTFILE_PATH = '/var/lib/node_exporter_textfile/custom_metrics.prom'
    DEFAULT_METRIC_PREFIX = 'edge_'
    DEFAULT_ROLE = 'default'
    DEFAULT_INTERVAL = 15
    DEFAULT_HEARTBEAT_INTERVAL = 3600

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    NODE_NAME_ENV = 'NODE_NAME'

    _STRING_SETTINGS = (
        'node_config_path', 'scripts_dir', 'textfile_path', 'default_role'
    )
    _POSITIVE_SETTINGS = (
        'script_timeout_sec', 'default_interval_sec', 'heartbeat_interval_sec'
    )
    _PREFIX_PATTERN = re.compile(r'^[a-zA-Z_:][a-zA-Z0-9_:]*$')
    _LOG_LEVELS = ('DEBUG', 'VERBOSE', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

    def __init__(self, source: ProgramSource):
        """Initialize configuration and load the settings file once."""
        self._source = source
        self._config = self._get_defaults()
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self._pending_messages: List[tuple[str, str]] = []
        self._logger: Optional[logging.Logger] = None
        self.load()

    @property
    def logger(self) -> Optional[logging.Logger]:
        return self._logger

    @logger.setter
    def logger(self, logger: logging.Logger) -> None:
        """Attach logger and replay messages raised while loading."""
        self._logger = logger
        pending, self._pending_messages = self._pending_messages, []
        for level, message in pending:
            getattr(logger, level)(message)

    def _log_message(self, level: str, message: str) -> None:
        """Log now if a logger is attached, otherwise queue the message."""
        if self._logger:
            getattr(self._logger, level)(message)
        else:
            self._pending_messages.append((level, message))

    def _get_defaults(self) -> Dict[str, Any]:
        """Get default collector configuration."""
        return {
            'collector': {
                'node_config_path': self.DEFAULT_NODE_CONFIG_PATH,
                'scripts_dir': self.DEFAULT_SCRIPTS_DIR,
                'script_extension': self.DEFAULT_SCRIPT_EXTENSION,
                'interpreter': self.DEFAULT_INTERPRETER,
                'script_timeout_sec': self.DEFAULT_SCRIPT_TIMEOUT,
                'max_line_bytes': self.DEFAULT_MAX_LINE_BYTES,
                'textfile_path': self.DEFAULT_TEXTFILE_PATH,
                'metric_prefix': self.DEFAULT_METRIC_PREFIX,
                'default_role': self.DEFAULT_ROLE,
                'default_interval_sec': self.DEFAULT_INTERVAL,
                'heartbeat_interval_sec': self.DEFAULT_HEARTBEAT_INTERVAL
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'file': self.DEFAULT_LOG_FILE,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self) -> None:
        """Load the settings file over the defaults.

        A missing, unreadable or malformed file leaves the defaults in place.
        Individual invalid values are replaced by their defaults with a warning.
        """
        path = self._source.settings_path
        if path is None:
            self._log_message('info', "No settings file found, using built-in defaults")
            return

        try:
            with open(path, encoding='utf-8') as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            self._log_message('error', f"Failed to load settings file {path}: {e}. Using defaults")
            return

        if not isinstance(file_config, dict):
            self._log_message('error', f"Settings file {path} must contain a mapping. Using defaults")
            return

        for section in file_config:
            if section not in self._config:
                self._log_message('warning', f"Ignoring unknown settings section '{section}'")

        new_config = self._get_defaults()
        new_config['collector'] = self._validate_collector_section(
            file_config.get('collector') or {}
        )
        new_config['logging'] = self._validate_logging_section(
            file_config.get('logging') or {}
        )
        self._config = new_config
        self._log_message('info', f"Loaded settings from {path}")

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _validate_collector_section(self, config: Any) -> Dict[str, Any]:
        """Validate the collector section, keeping defaults for bad values."""
        defaults = self._get_defaults()['collector']
        if not isinstance(config, dict):
            self._log_message('warning', "Settings section 'collector' must be a mapping, ignoring it")
            return defaults

        accepted = {}
        for key, value in config.items():
            if key not in defaults:
                self._log_message('warning', f"Ignoring unknown collector setting '{key}'")
                continue

            if key in self._STRING_SETTINGS:
                valid = isinstance(value, str) and bool(value.strip())
            elif key in self._POSITIVE_SETTINGS:
                valid = isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
            elif key == 'max_line_bytes':
                valid = isinstance(value, int) and not isinstance(value, bool) and value > 0
            elif key == 'metric_prefix':
                valid = isinstance(value, str) and bool(self._PREFIX_PATTERN.match(value))
            elif key == 'interpreter':
                valid = value is None or isinstance(value, str)
            else:  # script_extension
                valid = isinstance(value, str)

            if valid:
                accepted[key] = value.strip() if key in self._STRING_SETTINGS else value
            else:
                self._log_message(
                    'warning',
                    f"Invalid value {value!r} for collector setting '{key}', "
                    f"using default {defaults[key]!r}"
                )

        return self._merge_with_defaults(defaults, accepted)

    def _validate_logging_section(self, config: Any) -> Dict[str, Any]:
        """Validate the logging section, keeping defaults for bad values."""
        defaults = self._get_defaults()['logging']
        if not isinstance(config, dict):
            self._log_message('warning', "Settings section 'logging' must be a mapping, ignoring it")
            return defaults

        accepted = {}
        for key, value in config.items():
            if key not in defaults:
                self._log_message('warning', f"Ignoring unknown logging setting '{key}'")
                continue

            if key.endswith('level'):
                valid = isinstance(value, str) and value.upper() in self._LOG_LEVELS
                value = value.upper() if valid else value
            elif key in ('max_bytes', 'backup_count'):
                valid = isinstance(value, int) and not isinstance(value, bool) and value >= 0
            elif key == 'file':
                valid = value is None or (isinstance(value, str) and bool(value.strip()))
            else:  # format, date_format
                valid = isinstance(value, str) and bool(value)

            if valid:
                accepted[key] = value
            else:
                self._log_message(
                    'warning',
                    f"Invalid value {value!r} for logging setting '{key}', "
                    f"using default {defaults[key]!r}"
                )

        return self._merge_with_defaults(defaults, accepted)

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def node_name(self) -> str:
        """Identity of this node, injected by the orchestrator."""
        return os.getenv(self.NODE_NAME_ENV) or self.DEFAULT_NODE_NAME

    @property
    def collector(self) -> Dict[str, Any]:
        """Get collector configuration."""
        return self._config['collector']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self._config['logging']

    @property
    def node_config_path(self) -> Path:
        return Path(self.collector['node_config_path'])

    @property
    def scripts_dir(self) -> Path:
        return Path(self.collector['scripts_dir'])

    @property
    def script_extension(self) -> str:
        return self.collector['script_extension']

    @property
    def interpreter(self) -> Optional[str]:
        """Interpreter for probe scripts, None to execute them directly."""
        return self.collector['interpreter'] or None

    @property
    def script_timeout(self) -> float:
        """Get probe timeout in seconds."""
        return self.collector['script_timeout_sec']

    @property
    def max_line_bytes(self) -> int:
        return self.collector['max_line_bytes']

    @property
    def textfile_path(self) -> Path:
        return Path(self.collector['textfile_path'])

    @property
    def metric_prefix(self) -> str:
        return self.collector['metric_prefix']

    @property
    def default_role(self) -> str:
        return self.collector['default_role']

    @property
    def default_interval(self) -> float:
        """Get fallback collection interval in seconds."""
        return self.collector['default_interval_sec']

    @property
    def heartbeat_interval(self) -> float:
        """Get idle heartbeat interval in seconds."""
        return self.collector['heartbeat_interval_sec']

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with efficient deferred evaluation."""

            if not ProgramLogger.VERBOSE_DEBUG:
                return
            if not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            # Handle deferred evaluation of expensive computations
            if callable(msg):
                if args or kwargs:
                    self.log(ProgramLogger.VERBOSE_LEVEL, msg(*args, **kwargs))
                else:
                    self.log(ProgramLogger.VERBOSE_LEVEL, msg())
            # Handle string formatting
            elif args or kwargs:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg.format(*args, **kwargs))
            # Handle simple strings
            else:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg)

    @classmethod
    def register_verbose_level(cls) -> None:
        """Install the VERBOSE level and make VerboseLogger the logger class."""
        logging.addLevelName(cls.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(cls.VerboseLogger)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
        """
        self.register_verbose_level()

        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}

        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from the settings file.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Note:
            If handler setup fails, ensures at least basic console logging
            is available as a fallback.
        """
        logger = logging.getLogger(self.source.logger_name)
        logger.handlers.clear()
        logger.propagate = False

        log_settings = self.config.logging
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        try:
            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # File handler
            if log_settings['file']:
                log_path = Path(log_settings['file'])
                log_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = RotatingFileHandler(
                    log_path,
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setLevel(log_settings['file_level'])
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                self._handlers['file'] = file_handler

            # Journal handler for systemd
            if self.config.running_under_systemd:
                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            # Keep whatever handlers made it, but never run without console output
            if 'console' not in self._handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
                self._handlers['console'] = basic_handler
            print(f"Failed to setup handlers: {e}, continuing with console logging", file=sys.stderr)

        return logger

    def close(self) -> None:
        """Flush and close all handlers."""
        for name, handler in list(self._handlers.items()):
            try:
                handler.close()
            except Exception as e:
                print(f"Error closing log handler {name}: {e}", file=sys.stderr)
            self._logger.removeHandler(handler)
        self._handlers.clear()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Names and Durations
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

_INVALID_NAME_CHARS = re.compile(r'[^a-zA-Z0-9_:]')

def sanitize_metric_name(name: str) -> str:
    """Replace every character not allowed in a metric name with '_'."""
    return _INVALID_NAME_CHARS.sub('_', name)


_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,  # U+00B5 micro sign
    'μs': 1e-6,  # U+03BC greek mu
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)')

def parse_duration(text: str) -> float:
    """Parse a compact duration such as "10s", "1.5h" or "1h30m" into seconds.

    Each number needs a unit; the bare literal "0" is the only exception.

    Raises:
        DurationParseError: If the text is not a valid duration
    """
    remaining = text
    sign = 1.0
    if remaining[:1] in ('+', '-'):
        sign = -1.0 if remaining[0] == '-' else 1.0
        remaining = remaining[1:]

    if remaining == '0':
        return 0.0
    if not remaining:
        raise DurationParseError(f"Invalid duration '{text}'")

    seconds = 0.0
    pos = 0
    while pos < len(remaining):
        match = _DURATION_PART.match(remaining, pos)
        if not match:
            raise DurationParseError(f"Invalid duration '{text}'")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    return sign * seconds

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Node Role Resolution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class NodeAssignment:
    """Role and collection interval (seconds) resolved for a node."""
    role: str
    interval: float

class NodeConfigResolver:
    """Resolves a node identity to its role and interval from the nodes file.

    The file is line oriented::

        # identity=role[:interval]
        edge-01=sensors:10s
        edge-02=gateway

    The first line whose identity matches wins. Nothing here is fatal: an
    unreadable file, a missing entry or a bad interval each fall back to the
    default role or interval.
    """

    def __init__(self, config: ProgramConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    @property
    def fallback(self) -> NodeAssignment:
        return NodeAssignment(self.config.default_role, self.config.default_interval)

    def resolve(self, identity: str) -> NodeAssignment:
        """Resolve identity to a NodeAssignment."""
        path = self.config.node_config_path
        fallback = self.fallback

        try:
            with open(path, encoding='utf-8', errors='replace') as f:
                for raw_line in f:
                    line = raw_line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue

                    node, value = line.split('=', 1)
                    if node.strip() != identity:
                        continue

                    self.logger.verbose(f"Matched nodes file entry: {line}")
                    return self._parse_value(identity, value.strip())

        except OSError as e:
            self.logger.warning(
                f"Cannot read nodes file {path}: {e}. Using default role "
                f"'{fallback.role}' with interval {fallback.interval}s"
            )
            return fallback

        self.logger.verbose(f"No entry for node {identity} in {path}")
        return fallback

    def _parse_value(self, identity: str, value: str) -> NodeAssignment:
        """Parse the right-hand side of a matching entry."""
        if ':' not in value:
            return NodeAssignment(value, self.config.default_interval)

        role, interval_text = value.split(':', 1)
        role = role.strip()
        interval_text = interval_text.strip()

        try:
            interval = parse_duration(interval_text)
        except DurationParseError:
            interval = None

        if interval is None or interval <= 0:
            self.logger.warning(
                f"Invalid duration '{interval_text}' for node {identity}, "
                f"falling back to {self.config.default_interval}s"
            )
            return NodeAssignment(role, self.config.default_interval)

        return NodeAssignment(role, interval)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metric Sets
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class MetricPoint:
    """A single gauge sample."""
    name: str
    value: float
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> tuple:
        """Series identity: name plus sorted labels."""
        return (self.name, tuple(sorted(self.labels.items())))

class MetricSet:
    """Ordered gauges collected in one cycle.

    Implements the prometheus_client collector protocol, so a set can be
    registered in a CollectorRegistry and rendered with generate_latest().
    Adding a point whose name and labels are already present replaces the
    earlier value (last write wins). Once sealed the set is read-only.
    """

    def __init__(self, documentation: str = ''):
        self.documentation = documentation
        self._points: 'OrderedDict[tuple, MetricPoint]' = OrderedDict()
        self._sealed = False

    def add(self, point: MetricPoint) -> None:
        if self._sealed:
            raise MetricError(f"Cannot add {point.name} to a sealed metric set")
        self._points[point.key] = point

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def get(self, name: str) -> Optional[MetricPoint]:
        """Return the last point with this name, if any."""
        found = None
        for point in self._points.values():
            if point.name == name:
                found = point
        return found

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[MetricPoint]:
        return iter(list(self._points.values()))

    def __contains__(self, name: object) -> bool:
        return any(point.name == name for point in self._points.values())

    def collect(self) -> Iterator[GaugeMetricFamily]:
        """Yield one gauge family per metric name, in first-seen order."""
        families: 'OrderedDict[str, GaugeMetricFamily]' = OrderedDict()
        for point in self._points.values():
            family = families.get(point.name)
            if family is None:
                family = GaugeMetricFamily(point.name, self.documentation)
                families[point.name] = family
            family.add_sample(point.name, dict(point.labels), point.value)
        yield from families.values()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Script Execution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class ScriptResult:
    """Result of a probe script run.

    `metrics` always holds whatever was parsed, even when the run failed.
    """
    metrics: MetricSet
    success: bool
    error: Optional[MetricCollectionError] = None
    returncode: Optional[int] = None
    execution_time: float = 0
    timestamp: datetime = field(default_factory=ProgramConfig.now_utc)

    @property
    def parsed(self) -> int:
        """Number of points in the result."""
        return len(self.metrics)

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, ScriptTimeoutError)

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

class ScriptRunner:
    """Runs a role's probe script and parses its output into a MetricSet."""

    REAP_TIMEOUT = 5  # seconds

    def __init__(self, config: ProgramConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def script_path(self, role: str) -> Path:
        """Probe script bound to a role."""
        return self.config.scripts_dir / f"{role}{self.config.script_extension}"

    def has_script(self, role: str) -> bool:
        """True unless the role's probe is known to be absent.

        A probe that exists but cannot be inspected counts as present, so
        every cycle reports why it cannot be run.
        """
        script = self.script_path(role)
        try:
            return script.is_file()
        except OSError as e:
            self.logger.warning(f"Cannot inspect probe {script}: {e}")
            return True

    def _build_command(self, script: Path) -> List[str]:
        if self.config.interpreter:
            return [self.config.interpreter, str(script)]
        return [str(script)]

    def parse_line(self, line: str, identity: str) -> Optional[MetricPoint]:
        """Parse one `key=value` output line.

        Returns None for blank lines, comments, lines without '=' and
        values that are not numbers.
        """
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            return None

        key, raw_value = line.split('=', 1)
        # Decimal and exponent forms plus NaN/Inf; hex floats are rejected
        try:
            value = float(raw_value.strip())
        except ValueError:
            return None

        return MetricPoint(
            name=self.config.metric_prefix + sanitize_metric_name(key),
            value=value,
            labels={'node': identity}
        )

    async def collect(
        self,
        role: str,
        identity: str,
        metric_set: Optional[MetricSet] = None
    ) -> ScriptResult:
        """Run the role's probe and parse its output.

        Output is read line by line while the probe runs. The probe is
        killed together with its process group when the timeout expires.
        Points parsed before a timeout, a pipe error or a non-zero exit
        stay in the returned metrics.
        """
        script = self.script_path(role)
        metrics = metric_set if metric_set is not None else MetricSet(f"Metric from {role}")
        result = ScriptResult(metrics=metrics, success=False)
        start_time = time.monotonic()
        command = self._build_command(script)

        self.logger.verbose(f"Executing probe: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
                limit=self.config.max_line_bytes
            )
        except OSError as e:
            result.error = MetricCollectionError(f"Failed to start {script}: {e}")
            return self._finish(result, script, start_time)

        try:
            result.returncode = await asyncio.wait_for(
                self._consume(process, metrics, identity),
                timeout=self.config.script_timeout
            )
        except asyncio.TimeoutError:
            result.error = ScriptTimeoutError(
                f"Script {script} timed out after {self.config.script_timeout}s"
            )
            result.returncode = await self._terminate(process)
        except (OSError, ValueError) as e:
            # ValueError: a line longer than max_line_bytes
            result.error = MetricCollectionError(f"Failed reading output of {script}: {e}")
            result.returncode = await self._terminate(process)
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        else:
            if result.returncode == 0:
                result.success = True
            else:
                result.error = MetricCollectionError(
                    f"Script {script} exited with status {result.returncode}"
                )

        return self._finish(result, script, start_time)

    async def _consume(
        self,
        process: asyncio.subprocess.Process,
        metrics: MetricSet,
        identity: str
    ) -> int:
        """Parse stdout until EOF, then wait for the exit status."""
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            point = self.parse_line(raw.decode('utf-8', errors='replace'), identity)
            if point is not None:
                metrics.add(point)

        return await process.wait()

    async def _terminate(self, process: asyncio.subprocess.Process) -> Optional[int]:
        """Kill the probe's process group and reap it."""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            if process.returncode is None:
                process.kill()

        try:
            return await asyncio.wait_for(process.wait(), timeout=self.REAP_TIMEOUT)
        except asyncio.TimeoutError:
            # A descendant outside the process group still holds stdout open
            self.logger.warning(f"Probe process {process.pid} did not exit after SIGKILL")
            return process.returncode

    def _finish(self, result: ScriptResult, script: Path, start_time: float) -> ScriptResult:
        result.metrics.seal()
        result.execution_time = time.monotonic() - start_time
        self.logger.info(
            f"Collected {result.parsed} metrics from {script} "
            f"in {result.execution_time:.2f}s"
        )
        return result

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Snapshot Publishing
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SnapshotWriter:
    """Publishes metric sets as a textfile snapshot.

    The snapshot is written to a uniquely named temp file in the target
    directory and renamed over the target, so readers always see either the
    previous or the new complete file.
    """

    FILE_MODE = 0o644

    def __init__(self, config: ProgramConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    @staticmethod
    def render(metric_set: MetricSet) -> bytes:
        """Encode a metric set in the Prometheus text exposition format."""
        registry = CollectorRegistry(auto_describe=False)
        registry.register(metric_set)
        return generate_latest(registry)

    def publish(self, metric_set: MetricSet, path: Optional[Path] = None) -> Path:
        """Atomically replace the snapshot at path with metric_set.

        Raises:
            PublishError: If the snapshot could not be written; the file at
                path is left as it was
        """
        target = Path(path) if path is not None else self.config.textfile_path
        tmp_path = None

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            payload = self.render(metric_set)

            # Temp name never ends in .prom so the textfile collector skips it
            fd, tmp_name = tempfile.mkstemp(
                prefix=f"{target.name}.{os.getpid()}.",
                dir=target.parent
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, 'wb') as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, self.FILE_MODE)

            os.replace(tmp_path, target)
            tmp_path = None

        except Exception as e:
            if tmp_path is not None:
                try:
                    tmp_path.unlink(missing_ok=True)
                except OSError as cleanup_error:
                    self.logger.warning(f"Failed to remove temp file {tmp_path}: {cleanup_error}")
            raise PublishError(f"Failed to publish snapshot to {target}: {e}") from e

        self.logger.verbose(f"Published {len(metric_set)} metrics to {target}")
        return target

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Scheduling
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SchedulerState(Enum):
    """Lifecycle states of the collector."""
    RESOLVING = "resolving"  # Reading the nodes file
    IDLE = "idle"            # No probe for this node, heartbeat only
    ACTIVE = "active"        # Running the probe every interval
    STOPPED = "stopped"      # Shutdown requested

@dataclass
class CycleStats:
    """Statistics for collection cycles.

    Attributes:
        cycles (int): Cycles run
        successful (int): Cycles whose probe exited cleanly
        errors (int): Cycles whose probe failed or timed out
        publish_errors (int): Cycles whose snapshot could not be written
        consecutive_failures (int): Current streak of failed cycles
        heartbeats (int): Idle heartbeats logged
        last_cycle_time (float): Duration of the last cycle
        last_metric_count (int): Points published by the last cycle
    """
    cycles: int = 0
    successful: int = 0
    errors: int = 0
    publish_errors: int = 0
    consecutive_failures: int = 0
    heartbeats: int = 0
    last_cycle_time: float = 0
    last_metric_count: int = 0

    def record_cycle(self, result: ScriptResult, published: bool, duration: float) -> None:
        self.cycles += 1
        if result.success:
            self.successful += 1
        else:
            self.errors += 1
        if not published:
            self.publish_errors += 1

        if result.success and published:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

        self.last_cycle_time = duration
        self.last_metric_count = result.parsed

    def summary(self) -> str:
        return (
            f"{self.successful} ok, {self.errors} failed, "
            f"{self.publish_errors} publish errors, "
            f"{self.consecutive_failures} consecutive failures"
        )

class CollectorService:
    """Drives the collector: resolve once, then idle or collect forever.

    Attributes:
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        state (SchedulerState): Current lifecycle state
        assignment (NodeAssignment): Role and interval, set once resolved
        stats (CycleStats): Cycle statistics
        shutdown_event (asyncio.Event): Set to stop the loop
    """

    def __init__(
        self,
        config: ProgramConfig,
        logger: logging.Logger,
        resolver: Optional[NodeConfigResolver] = None,
        runner: Optional[ScriptRunner] = None,
        writer: Optional[SnapshotWriter] = None
    ):
        self.config = config
        self.logger = logger
        self.resolver = resolver or NodeConfigResolver(config, logger)
        self.runner = runner or ScriptRunner(config, logger)
        self.writer = writer or SnapshotWriter(config, logger)
        self.state = SchedulerState.RESOLVING
        self.assignment: Optional[NodeAssignment] = None
        self.identity: Optional[str] = None
        self.stats = CycleStats()
        self.shutdown_event = asyncio.Event()

    def stop(self, signum: Optional[int] = None) -> None:
        """Request shutdown; the loop exits at its next wait."""
        if signum is not None:
            self.logger.info(f"Received {signal.Signals(signum).name}, initiating shutdown...")
        self.shutdown_event.set()

    def resolve(self) -> SchedulerState:
        """Resolve this node's role once and choose IDLE or ACTIVE."""
        self.state = SchedulerState.RESOLVING
        self.identity = self.config.node_name
        self.assignment = self.resolver.resolve(self.identity)
        role = self.assignment.role
        script = self.runner.script_path(role)

        self.logger.info(
            f"Node: {self.identity}, Role: {role}, "
            f"Interval: {self.assignment.interval}s, Script: {script}"
        )

        if role == self.config.default_role or not self.runner.has_script(role):
            self.logger.info(
                f"Node {self.identity} (role: {role}) enters IDLE mode. "
                f"Heartbeat: {self.config.heartbeat_interval}s"
            )
            self.state = SchedulerState.IDLE
        else:
            self.state = SchedulerState.ACTIVE

        return self.state

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Wait up to timeout seconds; True if shutdown was requested."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def heartbeat(self) -> None:
        self.stats.heartbeats += 1
        self.logger.info(
            f"Heartbeat: collector is alive on {self.identity} (idle, "
            f"heartbeat {self.stats.heartbeats}, "
            f"uptime {self.config.get_uptime_seconds():.0f}s)"
        )

    async def run_idle(self) -> None:
        """Heartbeat until shutdown; no collection work."""
        while not self.shutdown_event.is_set():
            self.heartbeat()
            if await self._wait_for_shutdown(self.config.heartbeat_interval):
                break

    async def run_cycle(self) -> ScriptResult:
        """Run one collection cycle and publish its snapshot.

        Each cycle starts from an empty MetricSet, so keys a probe stops
        reporting disappear from the next snapshot.
        """
        if self.assignment is None:
            self.resolve()

        start_time = time.monotonic()
        role = self.assignment.role
        metric_set = MetricSet(f"Metric from {role}")

        result = await self.runner.collect(role, self.identity, metric_set)
        if not result.success:
            self.logger.error(f"Collection failed: {result.error_message}")

        published = True
        try:
            # Blocking file I/O runs off the event loop
            await asyncio.to_thread(self.writer.publish, result.metrics)
        except PublishError as e:
            published = False
            self.logger.error(f"Textfile write error: {e}")

        duration = time.monotonic() - start_time
        self.stats.record_cycle(result, published, duration)
        self.logger.info(
            f"Cycle {self.stats.cycles} completed in {duration:.2f}s: "
            f"{self.stats.last_metric_count} metrics, "
            f"{'published' if published else 'not published'} "
            f"({self.stats.summary()})"
        )
        return result

    async def run_active(self) -> None:
        """Run a cycle every interval until shutdown.

        The first cycle fires one interval after start. Ticks missed while
        a cycle overran are dropped.
        """
        loop = asyncio.get_running_loop()
        interval = self.assignment.interval
        next_tick = loop.time() + interval

        while not self.shutdown_event.is_set():
            if await self._wait_for_shutdown(max(0, next_tick - loop.time())):
                break

            try:
                await self.run_cycle()
            except Exception as e:
                self.logger.error(f"Error in collection cycle: {e}", exc_info=True)

            next_tick += interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // interval) + 1
                self.logger.warning(
                    f"Collection took longer than interval, skipping {missed} "
                    f"tick(s) ({self.stats.last_cycle_time:.2f}s > {interval}s)"
                )
                next_tick += missed * interval

    async def run(self) -> int:
        """Main service loop. Returns a process exit code."""
        try:
            state = self.resolve()

            if self.config.running_under_systemd:
                notify(Notification.READY)

            if state == SchedulerState.IDLE:
                await self.run_idle()
            else:
                await self.run_active()

            self.logger.info("Shutdown requested, stopping collector")
            return 0

        except asyncio.CancelledError:
            self.logger.warning("Collector operation cancelled")
            raise

        except Exception as e:
            self.logger.exception(f"Fatal error in collector: {e}")
            return 1

        finally:
            self.state = SchedulerState.STOPPED
            if self.config.running_under_systemd:
                notify(Notification.STOPPING)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main() -> int:
    """Entry point for the collector service."""
    try:
        source = ProgramSource()
        config = ProgramConfig(source)
        program_logger = ProgramLogger(source, config)
        logger = program_logger.logger
    except Exception as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    service = CollectorService(config, logger)

    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT)
    for signum in signals:
        loop.add_signal_handler(signum, service.stop, signum)

    try:
        return await service.run()
    finally:
        for signum in signals:
            loop.remove_signal_handler(signum)
        logger.info("Collector shutdown complete")
        program_logger.close()

def cli() -> None:
    sys.exit(asyncio.run(main()))

if __name__ == '__main__':
    cli()
