#!/usr/bin/env python3

"""
Mini Metric Exporter

Description:
---------------------

Turns the output of shell commands and files into Prometheus metrics,
re-reading every source each time the metrics endpoint is scraped:
- Rules pairing a data source (command or file) with a gauge or counter
- Concurrent stdout/stderr capture with bounded command run time
- Line-oriented output format with optional labels
- Failed sources reported as NaN instead of breaking the scrape
- Optional battery status probe
- Systemd notification and journal logging

Usage:
---------------------
1. Create a YAML configuration file (default: mini_metric_exporter.yml
   beside the script, or pass --config-file)
2. Run the exporter directly or via systemd service
3. Scrape metrics at http://localhost:7002/metrics

Configuration:
---------------------

exporter:
    listen_address: ""      # Bind address, empty for all interfaces
    metrics_port: 7002      # Metrics port
    metrics_path: /metrics  # Scrape endpoint
    battery: true           # Expose battery_percent and battery_status
    collection:
        max_workers: 4          # Rules executed in parallel per scrape
        command_timeout_sec: 30 # Run time allowed to a command
        wait_delay_sec: 10      # Grace period after SIGTERM before SIGKILL
    logging:
        level: "INFO"           # Main logging level
        console_level: "INFO"   # Console output level
        file: null              # Optional log file path (rotated)
        file_level: "DEBUG"     # File logging level
        journal_level: "WARNING"  # Systemd journal level
        max_bytes: 10485760     # Log file size limit (10MB)
        backup_count: 3         # Log file rotation count
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

rules:
    rule_name:                  # Metric name
        description: "Help text"
        type: "gauge|counter"   # Optional, defaults to gauge
        command: "shell command"    # Either command...
        file: "/path/to/file"       # ...or file
        labels: [name, ...]     # Optional, label names always present
        init: false             # Run before every scrape, never exported

Output Format:
---------------------

Every command or file produces one sample per line:

    [label1="value1",label2="value2"] <float>

The label segment is optional. A bare word without "=" or "," is read as
the label type="<word>". A source that fails to run, exits non-zero or
prints an unparsable value is reported as a single unlabeled NaN.

Notes:
---------------------
- Each scrape re-executes every rule; nothing is cached between scrapes
- Label sets not produced by a later scrape keep their last value
- Invalid rules are skipped with an error, other rules keep loading
- Only configuration decode and listener bind failures are fatal
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import logging
import math
import os
import re
import signal
import sys
import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any, Dict, Iterable, List, Optional, Tuple, Union
)
from wsgiref.simple_server import WSGIRequestHandler, make_server

# Third party imports
import click
import psutil
from prometheus_client import (
    CollectorRegistry, Counter, Gauge, make_wsgi_app
)
from prometheus_client.core import GaugeMetricFamily, Metric
from prometheus_client.exposition import ThreadingWSGIServer
from prometheus_client.registry import Collector
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

__version__ = "0.1.0"

PROGRAM_NAME = "mini_metric_exporter"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricError(Exception):
    """Base class for metric-related errors."""
    pass

class MetricConfigurationError(MetricError):
    """Error in exporter configuration."""
    pass

class RuleConfigurationError(MetricConfigurationError):
    """Error in a single rule's configuration."""
    pass

class RuleRegistrationError(MetricError):
    """Rule collector could not be registered."""
    pass

class MetricCollectionError(MetricError):
    """Error while executing a rule's data source."""
    pass

class OutputParseError(MetricError):
    """Data source output does not follow the sample format."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source and Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file locations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())
    config_file: Optional[Path] = None

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def logger_name(self) -> str:
        """Name of the exporter logger."""
        return PROGRAM_NAME

    @property
    def config_path(self) -> Path:
        """Full path to config file."""
        if self.config_file is not None:
            path = Path(self.config_file).expanduser()
        else:
            path = self.script_dir / f"{PROGRAM_NAME}.yml"

        if path.is_file() and os.access(path, os.R_OK):
            return path

        raise FileNotFoundError(
            f"Config file {path} not found"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def parse_listen_address(listen_addr: str) -> Tuple[str, int]:
    """Split a "host:port" listen address; the host may be empty (":7002")."""
    host, sep, port = listen_addr.strip().rpartition(':')
    if not sep:
        raise MetricConfigurationError(
            f"Invalid listen address {listen_addr!r}: expected host:port"
        )
    try:
        port_number = int(port)
    except ValueError:
        raise MetricConfigurationError(
            f"Invalid listen address {listen_addr!r}: port is not a number"
        )
    if port_number < 1 or port_number > 65535:
        raise MetricConfigurationError(f"Invalid metrics port {port_number}")
    return host, port_number

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Exporter configuration with defaults and validation."""

    # Default values
    DEFAULT_LISTEN_ADDRESS = ''
    DEFAULT_METRICS_PORT = 7002
    DEFAULT_METRICS_PATH = '/metrics'
    DEFAULT_BATTERY = True
    DEFAULT_MAX_WORKERS = 4
    DEFAULT_COMMAND_TIMEOUT = 30
    DEFAULT_WAIT_DELAY = 10

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(self, source: ProgramSource):
        """Initialize configuration with defaults; call load() to read the file."""
        self._source = source
        self._config = {'exporter': self._get_exporter_defaults(), 'rules': {}}
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.logger = None

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'listen_address': self.DEFAULT_LISTEN_ADDRESS,
            'metrics_port': self.DEFAULT_METRICS_PORT,
            'metrics_path': self.DEFAULT_METRICS_PATH,
            'battery': self.DEFAULT_BATTERY,
            'collection': {
                'max_workers': self.DEFAULT_MAX_WORKERS,
                'command_timeout_sec': self.DEFAULT_COMMAND_TIMEOUT,
                'wait_delay_sec': self.DEFAULT_WAIT_DELAY
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'file': self.DEFAULT_LOG_FILE,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self) -> None:
        """Read and validate the configuration file.

        Raises:
            MetricConfigurationError: file missing, not YAML, or the
                exporter section is invalid. Individual rules are not
                validated here; see load_rules().
        """
        try:
            with open(self._source.config_path) as f:
                file_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise MetricConfigurationError(f"Failed to load config file: {e}")

        self.load_dict(file_config)

    def load_dict(self, file_config: Any) -> None:
        """Validate and apply an already decoded configuration document."""
        if file_config is None:
            file_config = {}
        if not isinstance(file_config, dict):
            raise MetricConfigurationError("Configuration must be a dictionary")

        exporter = file_config.get('exporter') or {}
        if not isinstance(exporter, dict):
            raise MetricConfigurationError("Exporter section must be a dictionary")
        new_exporter = self._merge_with_defaults(self._get_exporter_defaults(), exporter)
        self._validate_exporter_section(new_exporter)

        rules = file_config.get('rules')
        if rules is None:
            rules = {}
        if not isinstance(rules, dict):
            raise MetricConfigurationError("Rules section must be a dictionary")

        self._config = {'exporter': new_exporter, 'rules': rules}
        self._log_message(
            'info',
            f"Configuration loaded with {len(rules)} rules"
        )

    def _log_message(self, level: str, message: str) -> None:
        """Safe logging wrapper."""
        if self.logger:
            getattr(self.logger, level)(message)

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Basic validation of the merged exporter configuration."""
        metrics_port = config['metrics_port']
        if not isinstance(metrics_port, int) or metrics_port < 1 or metrics_port > 65535:
            raise MetricConfigurationError(f"Invalid metrics_port {metrics_port}")

        if not isinstance(config['listen_address'], str):
            raise MetricConfigurationError(
                f"Invalid listen_address {config['listen_address']!r}"
            )

        metrics_path = config['metrics_path']
        if not isinstance(metrics_path, str) or not metrics_path.startswith('/'):
            raise MetricConfigurationError(f"Invalid metrics_path {metrics_path!r}")

        collection = config['collection']
        if not isinstance(collection, dict):
            raise MetricConfigurationError("Collection section must be a dictionary")

        max_workers = collection['max_workers']
        if not isinstance(max_workers, int) or max_workers < 1:
            raise MetricConfigurationError(f"Invalid max_workers {max_workers}")

        for key in ('command_timeout_sec', 'wait_delay_sec'):
            value = collection[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise MetricConfigurationError(f"Invalid {key} {value}")

        if not isinstance(config['logging'], dict):
            raise MetricConfigurationError("Logging section must be a dictionary")

    def override_listen_address(self, listen_addr: str) -> None:
        """Replace listen address and port, e.g. from the command line."""
        host, port = parse_listen_address(listen_addr)
        self._config['exporter']['listen_address'] = host
        self._config['exporter']['metrics_port'] = port

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
    def exporter(self) -> Dict[str, Any]:
        """Get exporter configuration."""
        return self._config['exporter']

    @property
    def rules(self) -> Dict[str, Any]:
        """Get raw rules configuration, keyed by rule name."""
        return self._config['rules']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.exporter.get('logging', {})

    @property
    def collection(self) -> Dict[str, Any]:
        """Get collection configuration."""
        return self.exporter.get('collection', {})

    @property
    def listen_address(self) -> str:
        return self.exporter.get('listen_address', self.DEFAULT_LISTEN_ADDRESS)

    @property
    def metrics_port(self) -> int:
        return self.exporter.get('metrics_port', self.DEFAULT_METRICS_PORT)

    @property
    def metrics_path(self) -> str:
        return self.exporter.get('metrics_path', self.DEFAULT_METRICS_PATH)

    @property
    def battery_enabled(self) -> bool:
        return bool(self.exporter.get('battery', self.DEFAULT_BATTERY))

    @property
    def max_workers(self) -> int:
        """Get maximum number of rules executed in parallel."""
        return self.collection.get('max_workers', self.DEFAULT_MAX_WORKERS)

    @property
    def command_timeout(self) -> float:
        """Get command run time limit in seconds."""
        return self.collection.get('command_timeout_sec', self.DEFAULT_COMMAND_TIMEOUT)

    @property
    def wait_delay(self) -> float:
        """Get grace period between SIGTERM and SIGKILL in seconds."""
        return self.collection.get('wait_delay_sec', self.DEFAULT_WAIT_DELAY)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig,
        verbose: bool = False
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
            verbose: Force DEBUG level on the logger and console
        """
        self.source = source
        self.config = config
        self.verbose = verbose
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

    def _get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration completed with defaults."""
        logging_config = self.config.logging
        settings = {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL),
            'file': logging_config.get('file', self.config.DEFAULT_LOG_FILE),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }
        if self.verbose:
            settings['level'] = 'DEBUG'
            settings['console_level'] = 'DEBUG'
        return settings

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

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

        log_settings = self._get_logging_config()

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        try:
            logger.setLevel(log_settings['level'])

            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # File handler
            if log_settings['file']:
                file_handler = RotatingFileHandler(
                    Path(log_settings['file']).expanduser(),
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

        except (OSError, ValueError, TypeError) as e:
            # If handler setup fails, ensure we have at least a basic console handler
            for handler in self._handlers.values():
                logger.removeHandler(handler)
            self._handlers.clear()
            logger.setLevel(self.config.DEFAULT_LOG_LEVEL)
            basic_handler = logging.StreamHandler(sys.stdout)
            basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
            logger.addHandler(basic_handler)
            self._handlers['console'] = basic_handler
            print(f"Failed to setup handlers: {e}, using basic console handler", file=sys.stderr)

        return logger

    def close(self) -> None:
        """Close and detach all handlers."""
        for name in list(self._handlers):
            handler = self._handlers.pop(name)
            self._logger.removeHandler(handler)
            handler.close()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Enums and Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricType(Enum):
    """Prometheus metric families a rule can be exported as."""
    GAUGE = "gauge"      # A value that can go up and down
    COUNTER = "counter"  # Value that only increases

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'MetricType':
        """Get metric type from rule config, gauge when not specified."""
        if config.get('type') is None:
            return cls.GAUGE

        # "Gauge" and "COUNTER" are rejected
        try:
            return cls(config['type'])
        except ValueError:
            raise RuleConfigurationError(
                f"Invalid metric type: {config['type']!r}. "
                f"Must be one of: {[t.value for t in cls]}"
            )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SourceKind(Enum):
    """Where a rule gets its output from."""
    SHELL = "shell"  # Shell command, one metric per rule
    FILE = "file"    # File content, one metric per rule
    INIT = "init"    # Shell command run before each scrape, not exported

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

LabelKey = Tuple[Tuple[str, str], ...]

@dataclass(frozen=True)
class Sample:
    """One value read from a data source, with optional labels."""
    labels: Optional[Dict[str, str]]
    value: float

    @property
    def label_key(self) -> LabelKey:
        """Labels as a sorted, hashable key."""
        return tuple(sorted((self.labels or {}).items()))

Output = Tuple[Sample, ...]

# Returned by handlers whenever a source cannot be executed or parsed.
NAN_OUTPUT: Output = (Sample(labels=None, value=math.nan),)

def is_nan_output(output: Output) -> bool:
    """Check whether an output is the failure sentinel."""
    return output is NAN_OUTPUT

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

METRIC_NAME_RE = re.compile(r'^[a-zA-Z_:][a-zA-Z0-9_:]*$')
LABEL_NAME_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')

@dataclass(frozen=True)
class Rule:
    """A configured data source bound to one metric name."""
    name: str
    description: str = ''
    metric_type: MetricType = MetricType.GAUGE
    labels: Tuple[str, ...] = field(default_factory=tuple)
    command: str = ''
    file: str = ''
    init: bool = False

    @classmethod
    def from_config(cls, name: Any, config: Any) -> 'Rule':
        """Build a rule from its configuration mapping.

        Raises:
            RuleConfigurationError: the mapping cannot be decoded into a rule.
        """
        name = str(name)
        if not METRIC_NAME_RE.match(name):
            raise RuleConfigurationError(f"Invalid metric name {name!r}")

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise RuleConfigurationError(
                f"Rule '{name}' configuration must be a dictionary"
            )

        metric_type = MetricType.from_config(config)

        values = {}
        for key in ('description', 'command', 'file'):
            value = config.get(key)
            if value is None:
                value = ''
            if not isinstance(value, str):
                raise RuleConfigurationError(f"Field '{key}' must be a string")
            values[key] = value

        labels = config.get('labels') or ()
        if isinstance(labels, str) or not isinstance(labels, (list, tuple)):
            raise RuleConfigurationError("Field 'labels' must be a list of label names")
        for label in labels:
            if not isinstance(label, str) or not LABEL_NAME_RE.match(label):
                raise RuleConfigurationError(f"Invalid label name {label!r}")

        init = config.get('init', False)
        if not isinstance(init, bool):
            raise RuleConfigurationError("Field 'init' must be a boolean")

        return cls(
            name=name,
            description=values['description'],
            metric_type=metric_type,
            labels=tuple(labels),
            command=values['command'],
            file=values['file'],
            init=init
        )

    def classify(self) -> SourceKind:
        """Derive the source kind from which source field is set.

        Raises:
            RuleConfigurationError: no source, both sources, or an init
                rule without a command.
        """
        has_command = bool(self.command.strip())
        has_file = bool(self.file.strip())

        if has_command and has_file:
            raise RuleConfigurationError(
                "Cannot deduce rule type: both command and file are set"
            )
        if self.init:
            if not has_command:
                raise RuleConfigurationError("Init rule must specify a command")
            return SourceKind.INIT
        if has_command:
            return SourceKind.SHELL
        if has_file:
            return SourceKind.FILE

        raise RuleConfigurationError(
            "Cannot deduce rule type: neither command nor file is set"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Output Parsing
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# One name="value" pair, optionally followed by a separator
LABEL_PAIR_RE = re.compile(r'(\w+?)="(.*?)"[,\s]?')

# Label used when a source prints a bare word instead of name="value" pairs
SHORTHAND_LABEL = 'type'

def parse_label_segment(segment: str) -> Dict[str, str]:
    """Decode the label part of an output line.

    Pairs look like name="value" and are separated by commas or spaces,
    optionally inside square brackets. Anything that does not match a pair
    is ignored. A segment without any "=" or "," is shorthand for a single
    type label, so "disk 0.5" reads as type="disk".
    """
    matches = LABEL_PAIR_RE.findall(segment)
    labels = {name: value for name, value in matches}

    if not matches and not any(c in segment for c in '=,'):
        word = segment.strip('[]')
        if word:
            labels[SHORTHAND_LABEL] = word

    return labels

def parse_output(raw: Union[bytes, bytearray, str], logger: logging.Logger) -> Output:
    """Parse data source output into samples.

    Every non-blank line holds one sample; its last whitespace separated
    field is the value and everything before it the label segment.

    Raises:
        OutputParseError: output is not UTF-8 or a value is not a float.
            Nothing parsed before the bad line is returned.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode('utf-8')
        except UnicodeDecodeError as e:
            raise OutputParseError(f"Cannot decode output as UTF-8: {e}")
    else:
        text = raw

    samples: List[Sample] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        fields = line.split()
        if not fields:
            logger.debug(f"Skipping blank line {line_number}")
            continue

        if len(fields) > 2:
            logger.warning(
                f"Expected 1 or 2 fields on line {line_number}, "
                f"found {len(fields)}: {fields}"
            )

        raw_value = fields[-1]
        try:
            value = float(raw_value)
        except ValueError:
            raise OutputParseError(
                f"Invalid float value {raw_value!r} on line {line_number}"
            )

        if len(fields) == 1:
            samples.append(Sample(labels=None, value=value))
            continue

        segment = ' '.join(fields[:-1])
        labels = parse_label_segment(segment)
        logger.debug(f"Line {line_number}: labels={labels} value={value}")
        samples.append(Sample(labels=labels, value=value))

    return tuple(samples)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Source Handlers
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def _preview(data: bytes, limit: int = 4096) -> str:
    """Decode captured output for log messages, truncated to limit bytes."""
    text = data[:limit].decode('utf-8', errors='replace')
    if len(data) > limit:
        text += f"... ({len(data) - limit} more bytes)"
    return text

@dataclass
class CommandResult:
    """Result of a command execution."""
    command: str
    returncode: Optional[int] = None
    stdout: bytes = b''
    stderr: bytes = b''
    error_message: Optional[str] = None
    execution_time: float = 0

    @property
    def success(self) -> bool:
        return self.error_message is None and self.returncode == 0

    def raise_for_status(self) -> None:
        """Raise MetricCollectionError unless the command succeeded."""
        if self.error_message is not None:
            raise MetricCollectionError(self.error_message)
        if self.returncode != 0:
            raise MetricCollectionError(f"exit status {self.returncode}")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class RuleHandler:
    """Executes a rule's data source and returns its samples.

    execute() never raises; every failure is logged on the handler's logger
    and reported as NAN_OUTPUT.
    """

    def __init__(self, rule: Rule, kind: SourceKind, logger: logging.Logger):
        self.rule = rule
        self.kind = kind
        self.logger = logger

    async def execute(self) -> Output:
        raise NotImplementedError

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ShellHandler(RuleHandler):
    """Runs the rule's command through the system shell."""

    READ_CHUNK_SIZE = 64 * 1024

    def __init__(
        self,
        rule: Rule,
        kind: SourceKind,
        logger: logging.Logger,
        command_timeout: float = ProgramConfig.DEFAULT_COMMAND_TIMEOUT,
        wait_delay: float = ProgramConfig.DEFAULT_WAIT_DELAY
    ):
        super().__init__(rule, kind, logger)
        self.command_timeout = command_timeout
        self.wait_delay = wait_delay

    @property
    def command(self) -> str:
        return self.rule.command

    async def execute(self) -> Output:
        result = await self.run_command()

        try:
            result.raise_for_status()
        except MetricCollectionError as e:
            self.logger.error(
                f"Cannot execute command: {e} "
                f"(command={self.command!r}, stdout={_preview(result.stdout)!r}, "
                f"stderr={_preview(result.stderr)!r})"
            )
            return NAN_OUTPUT

        self.logger.debug(
            f"Command finished in {result.execution_time:.3f}s "
            f"with {len(result.stdout)} bytes of output"
        )

        try:
            return parse_output(result.stdout, self.logger)
        except OutputParseError as e:
            self.logger.error(
                f"Cannot parse command output: {e} "
                f"(command={self.command!r}, stdout={_preview(result.stdout)!r}, "
                f"stderr={_preview(result.stderr)!r})"
            )
            return NAN_OUTPUT

    async def run_command(self) -> CommandResult:
        """Run the command, capturing stdout and stderr in full.

        The command runs in its own process group. When it outlives
        command_timeout the group receives SIGTERM, then SIGKILL once
        wait_delay has passed. Streams still open wait_delay after the
        shell exited (a background child holding them) also get the
        group killed.
        """
        result = CommandResult(command=self.command)
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_shell(
                self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True
            )
        except OSError as e:
            result.error_message = f"Cannot start command: {e}"
            result.execution_time = time.monotonic() - start_time
            return result

        stdout = bytearray()
        stderr = bytearray()
        drains = [
            asyncio.create_task(self._drain(process.stdout, stdout)),
            asyncio.create_task(self._drain(process.stderr, stderr)),
        ]

        try:
            try:
                result.returncode = await asyncio.wait_for(
                    process.wait(), timeout=self.command_timeout
                )
            except asyncio.TimeoutError:
                result.error_message = f"Command timed out after {self.command_timeout}s"
                result.returncode = await self._terminate(process)

            drain_error = await self._finish_drains(process, drains)
            if drain_error and result.error_message is None:
                result.error_message = drain_error

        except asyncio.CancelledError:
            self._signal_group(process, signal.SIGKILL)
            raise

        finally:
            for task in drains:
                if not task.done():
                    task.cancel()

        result.stdout = bytes(stdout)
        result.stderr = bytes(stderr)
        result.execution_time = time.monotonic() - start_time
        return result

    async def _drain(self, stream: asyncio.StreamReader, buffer: bytearray) -> None:
        """Copy a stream into buffer until EOF."""
        while True:
            chunk = await stream.read(self.READ_CHUNK_SIZE)
            if not chunk:
                return
            buffer.extend(chunk)

    async def _finish_drains(
        self,
        process: asyncio.subprocess.Process,
        drains: List[asyncio.Task]
    ) -> Optional[str]:
        """Wait up to wait_delay for both streams to reach EOF."""
        done, pending = await asyncio.wait(drains, timeout=self.wait_delay)

        if pending:
            self.logger.warning(
                f"Output streams still open {self.wait_delay}s after command exit, "
                f"killing process group {process.pid}"
            )
            self._signal_group(process, signal.SIGKILL)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            return f"Output streams still open {self.wait_delay}s after command exit"

        for task in done:
            error = task.exception()
            if error is not None:
                return f"Cannot read command output: {error}"

        return None

    async def _terminate(self, process: asyncio.subprocess.Process) -> Optional[int]:
        """SIGTERM the process group, SIGKILL it after wait_delay."""
        self.logger.warning(
            f"Command exceeded {self.command_timeout}s, sending SIGTERM"
        )
        self._signal_group(process, signal.SIGTERM)
        try:
            return await asyncio.wait_for(process.wait(), timeout=self.wait_delay)
        except asyncio.TimeoutError:
            self.logger.warning(
                f"Command still running {self.wait_delay}s after SIGTERM, sending SIGKILL"
            )
            self._signal_group(process, signal.SIGKILL)
            return await process.wait()

    def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            # Whole group already gone
            pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class FileHandler(RuleHandler):
    """Reads the rule's file."""

    @property
    def path(self) -> Path:
        return Path(self.rule.file).expanduser()

    async def read(self) -> bytes:
        try:
            return await asyncio.to_thread(self.path.read_bytes)
        except OSError as e:
            raise MetricCollectionError(f"Cannot read file {self.path}: {e}")

    async def execute(self) -> Output:
        try:
            content = await self.read()
        except MetricCollectionError as e:
            self.logger.error(str(e))
            return NAN_OUTPUT

        try:
            return parse_output(content, self.logger)
        except OutputParseError as e:
            self.logger.error(
                f"Cannot parse file content: {e} "
                f"(file={str(self.path)!r}, content={_preview(content)!r})"
            )
            return NAN_OUTPUT

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def build_handler(
    rule: Rule,
    kind: SourceKind,
    logger: logging.Logger,
    command_timeout: float = ProgramConfig.DEFAULT_COMMAND_TIMEOUT,
    wait_delay: float = ProgramConfig.DEFAULT_WAIT_DELAY
) -> RuleHandler:
    """Create the handler for a classified rule."""
    if kind in (SourceKind.SHELL, SourceKind.INIT):
        return ShellHandler(
            rule, kind, logger,
            command_timeout=command_timeout,
            wait_delay=wait_delay
        )
    if kind == SourceKind.FILE:
        return FileHandler(rule, kind, logger)

    raise RuleConfigurationError(f"Rule handler not implemented for {kind}")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Collectors
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class RuleCollector(Collector):
    """Current values of one rule, one series per label set.

    Label sets are free-form: whatever labels a source prints become a
    series of this metric. Series are upserted and never removed.
    """

    def __init__(
        self,
        name: str,
        documentation: str,
        metric_type: MetricType = MetricType.GAUGE,
        labelnames: Iterable[str] = ()
    ):
        self.name = name
        self.documentation = documentation
        self.metric_type = metric_type
        self.labelnames = tuple(labelnames)
        self._values: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    @property
    def family_name(self) -> str:
        """Metric family name as prometheus_client expects it."""
        if self.metric_type == MetricType.COUNTER and self.name.endswith('_total'):
            return self.name[:-len('_total')]
        return self.name

    @property
    def sample_name(self) -> str:
        if self.metric_type == MetricType.COUNTER:
            return f"{self.family_name}_total"
        return self.name

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelKey:
        merged = dict(labels or {})
        for label_name in self.labelnames:
            merged.setdefault(label_name, '')
        return tuple(sorted(merged.items()))

    def apply(self, output: Output) -> None:
        """Upsert every sample of one execution."""
        with self._lock:
            for sample in output:
                self._values[self._key(sample.labels)] = sample.value

    def get(self, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value for a label set, None if never set."""
        with self._lock:
            return self._values.get(self._key(labels))

    def _new_family(self) -> Metric:
        return Metric(self.family_name, self.documentation, self.metric_type.value)

    def describe(self) -> Iterable[Metric]:
        return [self._new_family()]

    def collect(self) -> Iterable[Metric]:
        with self._lock:
            values = list(self._values.items())

        family = self._new_family()
        for key, value in values:
            family.add_sample(self.sample_name, dict(key), value)
        return [family]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class BatteryStatus(IntEnum):
    """Values exported by battery_status."""
    UNKNOWN = 0
    CHARGING = 1
    DISCHARGING = 2
    NOT_CHARGING = 3  # Connected and charged

class BatteryCollector(Collector):
    """Battery level and status, read on every scrape."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def read(self) -> Tuple[float, float]:
        """Return (level 0-1, BatteryStatus); NaN for both when unavailable."""
        sensors_battery = getattr(psutil, 'sensors_battery', None)
        if sensors_battery is None:
            self.logger.debug("Battery sensors not supported on this platform")
            return math.nan, math.nan

        try:
            battery = sensors_battery()
        except (OSError, psutil.Error) as e:
            self.logger.warning(f"Cannot retrieve battery: {e}")
            return math.nan, math.nan

        if battery is None:
            self.logger.debug("No battery detected")
            return math.nan, math.nan

        return battery.percent / 100, float(self._status(battery))

    @staticmethod
    def _status(battery: Any) -> BatteryStatus:
        if battery.power_plugged is None:
            return BatteryStatus.UNKNOWN
        if not battery.power_plugged:
            return BatteryStatus.DISCHARGING
        if battery.percent >= 100:
            return BatteryStatus.NOT_CHARGING
        return BatteryStatus.CHARGING

    def _families(self, percent: Optional[float], status: Optional[float]) -> List[GaugeMetricFamily]:
        return [
            GaugeMetricFamily(
                'battery_percent',
                'Battery charge level, range 0-1',
                value=percent
            ),
            GaugeMetricFamily(
                'battery_status',
                'Battery status, 0 -> Unknown, 1 -> Charging, 2 -> Discharging, '
                '3 -> Not Charging (Connected and charged)',
                value=status
            ),
        ]

    def describe(self) -> Iterable[Metric]:
        return self._families(None, None)

    def collect(self) -> Iterable[Metric]:
        percent, status = self.read()
        return self._families(percent, status)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterMetrics:
    """Metrics describing the exporter itself."""

    def __init__(self, registry: CollectorRegistry):
        self.scrape_duration = Gauge(
            'mini_metric_scrape_duration_seconds',
            'Duration of the last scrape cycle in seconds',
            registry=registry
        )
        self.last_scrape = Gauge(
            'mini_metric_last_scrape_unix_seconds',
            'Unix timestamp of the last completed scrape cycle',
            registry=registry
        )
        self.uptime = Gauge(
            'mini_metric_uptime_seconds',
            'Time since the exporter started in seconds',
            registry=registry
        )
        self.rule_failures = Counter(
            'mini_metric_rule_failures',
            'Rule executions that reported NaN because their source failed',
            ['rule'],
            registry=registry
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class RuleSet:
    """Loaded rules: handlers and the collectors they own, by rule name."""
    registry: CollectorRegistry
    handlers: Dict[str, RuleHandler] = field(default_factory=dict)
    collectors: Dict[str, RuleCollector] = field(default_factory=dict)
    init_handlers: List[RuleHandler] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

def load_rules(
    rules_config: Dict[Any, Any],
    registry: CollectorRegistry,
    logger: logging.Logger,
    command_timeout: float = ProgramConfig.DEFAULT_COMMAND_TIMEOUT,
    wait_delay: float = ProgramConfig.DEFAULT_WAIT_DELAY
) -> RuleSet:
    """Classify rules and register one collector per metric rule.

    A rule that cannot be decoded, classified or registered is logged and
    skipped; the remaining rules still load.
    """
    rule_set = RuleSet(registry=registry)

    for name, rule_config in rules_config.items():
        name = str(name)
        rule_logger = logger.getChild(name)
        try:
            rule = Rule.from_config(name, rule_config)
            rule_logger.info(
                f"Found rule (command={rule.command!r}, file={rule.file!r})"
            )

            kind = rule.classify()
            rule_logger.info(f"Detected type {kind.value}")

            handler = build_handler(
                rule, kind, rule_logger,
                command_timeout=command_timeout,
                wait_delay=wait_delay
            )

            if kind == SourceKind.INIT:
                rule_set.init_handlers.append(handler)
                continue

            collector = RuleCollector(
                rule.name,
                rule.description,
                rule.metric_type,
                labelnames=rule.labels
            )
            try:
                registry.register(collector)
            except ValueError as e:
                raise RuleRegistrationError(f"Cannot register rule: {e}")

            rule_logger.info(f"Registered {rule.metric_type.value} metric")
            rule_set.handlers[name] = handler
            rule_set.collectors[name] = collector

        except (RuleConfigurationError, RuleRegistrationError) as e:
            rule_logger.error(f"Skipping rule: {e}")
            rule_set.skipped[name] = str(e)

    logger.info(
        f"Loaded {len(rule_set.handlers)} metric rules, "
        f"{len(rule_set.init_handlers)} init rules, "
        f"{len(rule_set.skipped)} skipped"
    )
    return rule_set

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Scrape Orchestration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class ScrapeResult:
    """Summary of one scrape cycle."""
    rules: int = 0
    samples: int = 0
    failed_rules: List[str] = field(default_factory=list)
    duration: float = 0

class ScrapeOrchestrator:
    """Runs every rule once and stores the results in its collector."""

    def __init__(
        self,
        rule_set: RuleSet,
        logger: logging.Logger,
        max_workers: int = ProgramConfig.DEFAULT_MAX_WORKERS,
        exporter_metrics: Optional[ExporterMetrics] = None
    ):
        self.rule_set = rule_set
        self.logger = logger
        self.max_workers = max_workers
        self.exporter_metrics = exporter_metrics

    async def scrape(self) -> ScrapeResult:
        """Run init rules, then all metric rules, then update collectors."""
        start_time = time.monotonic()
        result = ScrapeResult(rules=len(self.rule_set.handlers))
        self.logger.info("Updating metrics")

        # Init rules run first and in order; their output is discarded
        for handler in self.rule_set.init_handlers:
            output = await self._execute(handler)
            if is_nan_output(output):
                handler.logger.warning("Init rule failed, continuing with scrape")

        # Semaphore is per cycle, each cycle may run on its own event loop
        semaphore = asyncio.Semaphore(self.max_workers)
        names = list(self.rule_set.handlers)
        outputs = await asyncio.gather(*(
            self._execute_limited(semaphore, self.rule_set.handlers[name])
            for name in names
        ))

        for name, output in zip(names, outputs):
            self.rule_set.collectors[name].apply(output)
            result.samples += len(output)
            if is_nan_output(output):
                result.failed_rules.append(name)
                if self.exporter_metrics:
                    self.exporter_metrics.rule_failures.labels(rule=name).inc()

        result.duration = time.monotonic() - start_time
        if self.exporter_metrics:
            self.exporter_metrics.scrape_duration.set(result.duration)
            self.exporter_metrics.last_scrape.set(round(time.time(), 3))

        self.logger.info(
            f"Scrape completed in {result.duration:.2f}s: "
            f"{result.rules} rules, {result.samples} samples, "
            f"{len(result.failed_rules)} failed"
        )
        return result

    async def _execute_limited(self, semaphore: asyncio.Semaphore, handler: RuleHandler) -> Output:
        async with semaphore:
            return await self._execute(handler)

    async def _execute(self, handler: RuleHandler) -> Output:
        try:
            return await handler.execute()
        except Exception as e:
            handler.logger.error(f"Unexpected error executing rule: {e}", exc_info=True)
            return NAN_OUTPUT

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# HTTP Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def make_scrape_app(
    orchestrator: ScrapeOrchestrator,
    registry: CollectorRegistry,
    logger: logging.Logger,
    metrics_path: str = ProgramConfig.DEFAULT_METRICS_PATH
):
    """Create WSGI application running one scrape cycle per request.

    Rendering is left to prometheus_client; the cycle only refreshes the
    collectors before it runs.
    """
    metrics_app = make_wsgi_app(registry)
    expected_path = metrics_path.rstrip('/') or '/'

    def app(environ, start_response):
        path = environ.get('PATH_INFO', '').rstrip('/') or '/'
        method = environ.get('REQUEST_METHOD', 'GET')

        if path != expected_path:
            start_response('404 Not Found', [('Content-Type', 'text/plain; charset=utf-8')])
            return [b'Not Found\n']

        if method not in ('GET', 'HEAD'):
            start_response('405 Method Not Allowed', [
                ('Content-Type', 'text/plain; charset=utf-8'),
                ('Allow', 'GET, HEAD')
            ])
            return [b'Method Not Allowed\n']

        try:
            asyncio.run(orchestrator.scrape())
        except Exception as e:
            # Still serve whatever the collectors currently hold
            logger.error(f"Scrape cycle failed: {e}", exc_info=True)

        return metrics_app(environ, start_response)

    return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class _LoggingRequestHandler(WSGIRequestHandler):
    """Send access logs to the exporter logger instead of stderr."""

    def log_message(self, format, *args):
        logger = getattr(self.server, 'logger', None)
        if logger:
            logger.debug(f"{self.address_string()} - {format % args}")

class MetricsServer:
    """Threaded WSGI server for the scrape endpoint."""

    def __init__(self, app, host: str, port: int, logger: logging.Logger):
        self.app = app
        self.host = host
        self.port = port
        self.logger = logger
        self._server = None
        self._thread = None

    @property
    def server_address(self) -> Tuple[str, int]:
        """Bound address, useful when port 0 was requested."""
        if not self._server:
            return self.host, self.port
        return self._server.server_address[:2]

    def start(self) -> None:
        """Bind and serve in a daemon thread.

        Raises:
            OSError: the address cannot be bound.
        """
        self._server = make_server(
            self.host, self.port, self.app,
            server_class=ThreadingWSGIServer,
            handler_class=_LoggingRequestHandler
        )
        self._server.logger = self.logger
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="MetricsServer",
            daemon=True
        )
        self._thread.start()
        self.logger.info(f"Listening on {self.host or '*'}:{self.server_address[1]}")

    def stop(self) -> None:
        """Stop the server and wait for its thread."""
        if not self._server:
            return

        try:
            self.logger.info("Stopping metrics server")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning("Metrics server thread failed to stop")
        finally:
            self._server = None
            self._thread = None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsExporter:
    """Main service class for the metrics exporter.

    Builds the registry, battery probe and rules from the configuration,
    then serves the scrape endpoint until SIGINT or SIGTERM.

    Attributes:
        source (ProgramSource): Program source information
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        registry (CollectorRegistry): Registry rendered on every scrape
        rule_set (RuleSet): Loaded rules and their collectors
        orchestrator (ScrapeOrchestrator): Scrape cycle runner
        server (MetricsServer): HTTP server for the scrape endpoint
    """

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig,
        logger: logging.Logger
    ):
        self.source = source
        self.config = config
        self.logger = logger
        self.shutdown_event: Optional[asyncio.Event] = None

        self.logger.info("Starting metrics exporter initialization")

        # Exporter and battery metrics are registered before rules so a
        # rule reusing their names is the one rejected
        self.registry = CollectorRegistry()
        self.exporter_metrics = ExporterMetrics(self.registry)
        self.exporter_metrics.uptime.set_function(self.config.get_uptime_seconds)
        if self.config.battery_enabled:
            self.registry.register(BatteryCollector(self.logger.getChild('battery')))

        self.rule_set = load_rules(
            self.config.rules,
            self.registry,
            self.logger,
            command_timeout=self.config.command_timeout,
            wait_delay=self.config.wait_delay
        )
        self.orchestrator = ScrapeOrchestrator(
            self.rule_set,
            self.logger.getChild('metric-handler'),
            max_workers=self.config.max_workers,
            exporter_metrics=self.exporter_metrics
        )
        self.server = MetricsServer(
            make_scrape_app(
                self.orchestrator,
                self.registry,
                self.logger,
                metrics_path=self.config.metrics_path
            ),
            self.config.listen_address,
            self.config.metrics_port,
            self.logger
        )

        self.logger.info("Metrics exporter initialized")

    def _handle_signal(self, signum: int) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received {signal.Signals(signum).name}, initiating shutdown...")
        if self.shutdown_event:
            self.shutdown_event.set()

    async def run(self) -> int:
        """Serve until a shutdown signal arrives; returns the exit status."""
        loop = asyncio.get_running_loop()
        self.shutdown_event = asyncio.Event()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        try:
            try:
                self.server.start()
            except OSError as e:
                self.logger.error(
                    f"Error while listening on "
                    f"{self.config.listen_address or '*'}:{self.config.metrics_port}: {e}"
                )
                return 1

            # Notify systemd we're ready
            if self.config.running_under_systemd:
                notify(Notification.READY)

            await self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping service")
            return 0

        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            self.server.stop()
            if self.config.running_under_systemd:
                notify(Notification.STOPPING)
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main(
    config_file: Optional[Path] = None,
    listen_addr: Optional[str] = None,
    verbose: bool = False
) -> int:
    """Entry point for the metrics exporter service."""
    try:
        source = ProgramSource(config_file=config_file)
        config = ProgramConfig(source)
        config.load()
        if listen_addr:
            config.override_listen_address(listen_addr)
    except MetricConfigurationError as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    program_logger = ProgramLogger(source, config, verbose=verbose)
    logger = program_logger.logger
    logger.info(f"Using config file {source.config_path}")

    try:
        exporter = MetricsExporter(source, config, logger)
        return await exporter.run()
    finally:
        program_logger.close()

@click.command()
@click.version_option(version=__version__, prog_name=PROGRAM_NAME)
@click.option("--config-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help=f"Config file (default: {PROGRAM_NAME}.yml beside the script)")
@click.option("--listen-addr", default=None,
              help="Listen address, e.g. :7002 or 127.0.0.1:7002 (overrides config)")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging")
def cli(config_file: Optional[Path], listen_addr: Optional[str], verbose: bool):
    """Expose shell command and file outputs as Prometheus metrics."""
    raise SystemExit(asyncio.run(main(config_file, listen_addr, verbose)))

if __name__ == '__main__':
    cli()
