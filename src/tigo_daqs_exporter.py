#!/etc/prometheus/tigo/venv/bin/python3 -u

"""
Tigo DAQS Prometheus Exporter

Description:
---------------------

Bridges the CSV data-acquisition logs written by a Tigo CCA to a
Prometheus scraper:
- Finds the newest .csv file in the DAQS directory on every poll
- Parses the header width and the last complete data row
- Publishes per-module power, voltage, RSSI and temperature gauges
- Publishes the dataset timestamp of the last row
- Serves the current values on a metrics endpoint
- Serves collection status on a JSON health endpoint

Usage:
---------------------
1. Optionally create a YAML configuration file next to the script
2. Run the script directly or via systemd service
3. Monitor metrics at http://localhost:9980/metrics
4. Check service health at http://localhost:9981/health

Configuration:
---------------------

exporter:
    data_dir: /mnt/ffs/data/daqs  # Directory holding the rotating DAQS csv files
    bind_address: 0.0.0.0         # Address both HTTP endpoints bind to
    metrics_port: 9980            # Prometheus metrics port
    health_port: 9981             # Health check port, 0 disables it
    namespace: ""                 # Optional prefix for every metric name
    collection:
        poll_interval_sec: 10     # Delay between two polls of the data file
        failure_threshold: 20     # Consecutive skipped polls before unhealthy
    logging:
        level: "INFO"             # Main logging level (VERBOSE logs every module value)
        file_level: "DEBUG"       # File logging level
        console_level: "INFO"     # Console output level
        journal_level: "WARNING"  # Systemd journal level
        max_bytes: 10485760       # Log file size limit (10MB)
        backup_count: 3           # Log file rotation count
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

# Note: All configuration changes require service restart

Data File Layout:
---------------------
Column 0..2 are global (column 1 is the unix timestamp of the row),
followed by one 12 column group per module:

    Vin, Iin, Temp, Pwm, Status, Flags, RSSI, BRSSI, ID, Vout, Details, Pin

An empty field means the module did not report that value; the matching
series is removed rather than exported as zero.

Exported Metrics:
---------------------
module_power{name="A1"}       Module power in W
module_volts{name="A1"}       Module input voltage in V
module_rssi{name="A1"}        Module signal strength
module_temp{name="A1"}        Module temperature in celsius
timestamp{local="cca"}        Timestamp of the dataset

Error Handling:
---------------------
- Missing data directory or no csv file at all terminates the process
- Unreadable file, missing header or malformed last row skip one poll
  and keep the previously exported values

Dependencies:
---------------------
- Python 3.11+
- prometheus_client
- pyyaml
- cysystemd (for systemd integration)
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import csv
import json
import logging
import os
import signal
import socket
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

# Third party imports
from prometheus_client import (
    CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest
)
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

__version__ = "1.0.0"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterError(Exception):
    """Base class for exporter errors."""
    pass

class ExporterConfigurationError(ExporterError):
    """Error in exporter configuration."""
    pass

class DataSourceError(ExporterError):
    """Data directory unusable or empty. Not recoverable."""
    pass

class RecordParseError(ExporterError):
    """Data file could not be parsed on this poll."""
    pass

class HeaderError(RecordParseError):
    """Data file has no usable header row."""
    pass

class RecordError(RecordParseError):
    """Last data row holds an invalid or missing value."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source and Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file configurations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())

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
    def config_path(self) -> Path:
        """Full path to the (optional) config file."""
        return self.script_dir / f"{self.base_name}.yml"

    @property
    def has_config(self) -> bool:
        """Whether a readable config file exists."""
        path = self.config_path
        return path.is_file() and os.access(path, os.R_OK)

    @property
    def log_path(self) -> Path:
        """Full path to log file."""
        return self.script_dir / f"{self.base_name}.log"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Program configuration with defaults and validation."""

    DEFAULT_DATA_DIR = '/mnt/ffs/data/daqs'
    DEFAULT_BIND_ADDRESS = '0.0.0.0'
    DEFAULT_METRICS_PORT = 9980
    DEFAULT_HEALTH_PORT = 9981
    DEFAULT_NAMESPACE = ''
    DEFAULT_POLL_INTERVAL = 10
    DEFAULT_FAILURE_THRESHOLD = 20

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    LOG_LEVELS = ('DEBUG', 'VERBOSE', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

    def __init__(self, source: ProgramSource):
        """Initialize configuration manager."""
        self._source = source
        self._config = {'exporter': self._get_exporter_defaults()}
        self._loaded_from: Optional[Path] = None
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.logger = None

    def _log_message(self, level: str, message: str) -> None:
        """Safe logging wrapper."""
        if self.logger:
            getattr(self.logger, level)(message)

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'data_dir': self.DEFAULT_DATA_DIR,
            'bind_address': self.DEFAULT_BIND_ADDRESS,
            'metrics_port': self.DEFAULT_METRICS_PORT,
            'health_port': self.DEFAULT_HEALTH_PORT,
            'namespace': self.DEFAULT_NAMESPACE,
            'collection': {
                'poll_interval_sec': self.DEFAULT_POLL_INTERVAL,
                'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
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
        """Load the config file, if any, over the defaults.

        Raises:
            ExporterConfigurationError: If the file cannot be read or holds
                invalid values
        """
        new_config = {'exporter': self._get_exporter_defaults()}

        if self._source.has_config:
            try:
                with open(self._source.config_path) as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ExporterConfigurationError(f"Failed to load config file: {e}") from e

            if not isinstance(file_config, dict):
                raise ExporterConfigurationError("Config file must contain a mapping")

            exporter_config = file_config.get('exporter') or {}
            if not isinstance(exporter_config, dict):
                raise ExporterConfigurationError("'exporter' section must be a mapping")

            new_config['exporter'] = self._merge_with_defaults(
                new_config['exporter'],
                exporter_config
            )
            self._loaded_from = self._source.config_path
        else:
            self._loaded_from = None

        self._validate_exporter_section(new_config['exporter'])
        self._config = new_config
        self._log_message('info', self.describe_source())

    def describe_source(self) -> str:
        """Human readable origin of the active configuration."""
        if self._loaded_from:
            return f"Loaded configuration from {self._loaded_from}"
        return f"No config file at {self._source.config_path}, using defaults"

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = dict(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = value
        return result

    @staticmethod
    def _is_port(value: Any, allow_zero: bool = False) -> bool:
        if isinstance(value, bool) or not isinstance(value, int):
            return False
        if allow_zero and value == 0:
            return True
        return 1 <= value <= 65535

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Validate a merged exporter section, collecting every problem."""
        errors: List[str] = []

        data_dir = config.get('data_dir')
        if not isinstance(data_dir, str) or not data_dir.strip():
            errors.append(f"data_dir must be a non-empty path, got {data_dir!r}")

        if not isinstance(config.get('bind_address'), str):
            errors.append(f"bind_address must be a string, got {config.get('bind_address')!r}")

        metrics_port = config.get('metrics_port')
        if not self._is_port(metrics_port):
            errors.append(f"Invalid metrics_port {metrics_port}")

        health_port = config.get('health_port')
        if not self._is_port(health_port, allow_zero=True):
            errors.append(f"Invalid health_port {health_port}")
        elif health_port and metrics_port == health_port:
            errors.append("metrics_port and health_port must be different")

        if not isinstance(config.get('namespace'), str):
            errors.append(f"namespace must be a string, got {config.get('namespace')!r}")

        collection = config.get('collection')
        if not isinstance(collection, dict):
            errors.append("collection section must be a mapping")
        else:
            interval = collection.get('poll_interval_sec')
            if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
                errors.append(f"poll_interval_sec must be > 0, got {interval}")
            threshold = collection.get('failure_threshold')
            if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
                errors.append(f"failure_threshold must be >= 1, got {threshold}")

        logging_config = config.get('logging')
        if not isinstance(logging_config, dict):
            errors.append("logging section must be a mapping")
        else:
            for key in ('level', 'file_level', 'console_level', 'journal_level'):
                level = logging_config.get(key)
                if str(level).upper() not in self.LOG_LEVELS:
                    errors.append(f"logging.{key} must be one of {list(self.LOG_LEVELS)}, got {level!r}")

        if errors:
            raise ExporterConfigurationError(
                "Configuration errors:\n  " + "\n  ".join(errors)
            )

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
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.exporter.get('logging', {})

    @property
    def collection(self) -> Dict[str, Any]:
        """Get collection configuration."""
        return self.exporter.get('collection', {})

    @property
    def data_dir(self) -> Path:
        """Directory holding the DAQS csv files."""
        return Path(self.exporter.get('data_dir', self.DEFAULT_DATA_DIR))

    @property
    def bind_address(self) -> str:
        return self.exporter.get('bind_address', self.DEFAULT_BIND_ADDRESS)

    @property
    def metrics_port(self) -> int:
        """Get metrics port number."""
        return self.exporter.get('metrics_port', self.DEFAULT_METRICS_PORT)

    @property
    def health_port(self) -> int:
        """Get health check port number (0 when disabled)."""
        return self.exporter.get('health_port', self.DEFAULT_HEALTH_PORT)

    @property
    def namespace(self) -> str:
        return self.exporter.get('namespace', self.DEFAULT_NAMESPACE)

    @property
    def poll_interval(self) -> float:
        """Get polling interval in seconds."""
        return self.collection.get('poll_interval_sec', self.DEFAULT_POLL_INTERVAL)

    @property
    def failure_threshold(self) -> int:
        """Get failure threshold count."""
        return self.collection.get('failure_threshold', self.DEFAULT_FAILURE_THRESHOLD)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Logging
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

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration, already loaded
        """

        # Set VerboseLogger as the default logger class
        logging.addLevelName(self.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(self.VerboseLogger)

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
    def level(self) -> str:
        """Get current log level."""
        return logging.getLevelName(self._logger.level)

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_logging_config(self) -> Dict[str, Any]:
        """Get the logging settings with defaults filled in."""
        logging_config = self.config.logging
        return {
            'level': str(logging_config.get('level', self.config.DEFAULT_LOG_LEVEL)).upper(),
            'file_level': str(logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL)).upper(),
            'console_level': str(logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL)).upper(),
            'journal_level': str(logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL)).upper(),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - File handler with rotation (skipped if the log file is not writable)
        - Console handler
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance
        """
        logger = logging.getLogger(self.source.logger_name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        log_settings = self._get_logging_config()
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        # File handler
        try:
            file_handler = RotatingFileHandler(
                self.source.log_path,
                maxBytes=log_settings['max_bytes'],
                backupCount=log_settings['backup_count']
            )
        except OSError as e:
            print(f"No writable log file at {self.source.log_path}: {e}", file=sys.stderr)
        else:
            file_handler.setLevel(log_settings['file_level'])
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            self._handlers['file'] = file_handler

        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_settings['console_level'])
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)
        self._handlers['console'] = console_handler

        # Journal handler for systemd
        if self.config.running_under_systemd:
            journal_handler = journal.JournaldLogHandler()
            journal_handler.setLevel(log_settings['journal_level'])
            journal_handler.setFormatter(formatter)
            logger.addHandler(journal_handler)
            self._handlers['journal'] = journal_handler

        return logger

    def close(self) -> None:
        """Flush and close every handler."""
        for name, handler in list(self._handlers.items()):
            self._logger.removeHandler(handler)
            handler.close()
            del self._handlers[name]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Data File Layout
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

DATA_FILE_SUFFIX = '.csv'
TIMESTAMP_COLUMN = 1
FIXED_PREFIX_WIDTH = 3
MODULE_STRIDE = 12

class ModuleColumn(IntEnum):
    """Column offsets within one module group, relative to its base offset."""
    VOLTS_IN = 0
    CURRENT_IN = 1
    TEMP = 2
    PWM = 3
    STATUS = 4
    FLAGS = 5
    RSSI = 6
    BRSSI = 7
    ID = 8
    VOLTS_OUT = 9
    DETAILS = 10
    POWER_IN = 11

class Quantity(Enum):
    """Per-module quantities exported as gauge families."""
    POWER = "power"
    VOLTS = "volts"
    RSSI = "rssi"
    TEMP = "temp"

    @property
    def metric_name(self) -> str:
        return f"module_{self.value}"

    @property
    def column(self) -> ModuleColumn:
        return _QUANTITY_COLUMNS[self]

    @property
    def description(self) -> str:
        return _QUANTITY_DESCRIPTIONS[self]

_QUANTITY_COLUMNS = {
    Quantity.POWER: ModuleColumn.POWER_IN,
    Quantity.VOLTS: ModuleColumn.VOLTS_IN,
    Quantity.RSSI: ModuleColumn.RSSI,
    Quantity.TEMP: ModuleColumn.TEMP,
}

_QUANTITY_DESCRIPTIONS = {
    Quantity.POWER: "Module power value in W",
    Quantity.VOLTS: "Module volt value in V",
    Quantity.RSSI: "Module signal strength value",
    Quantity.TEMP: "Module temperature value in celsius",
}

def module_name(index: int) -> str:
    """Label value for a zero-based module index, e.g. 0 -> 'A1'."""
    return f"A{index + 1}"

def module_base_offset(index: int) -> int:
    """Absolute column of the first field of a zero-based module."""
    return FIXED_PREFIX_WIDTH + index * MODULE_STRIDE

def module_count_for_width(width: int) -> int:
    """Number of complete module groups in a header of the given width.

    Trailing columns that do not fill a whole group are ignored.

    Raises:
        HeaderError: If the header is narrower than the global prefix
    """
    if width < FIXED_PREFIX_WIDTH:
        raise HeaderError(
            f"Header has {width} columns, at least {FIXED_PREFIX_WIDTH} required"
        )
    return (width - FIXED_PREFIX_WIDTH) // MODULE_STRIDE

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Record Parsing
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ModuleReading:
    """Values of one module taken from a data row; None means not reported."""
    index: int
    volts: Optional[float] = None
    rssi: Optional[float] = None
    power: Optional[float] = None
    temp: Optional[float] = None

    @property
    def name(self) -> str:
        return module_name(self.index)

    def value(self, quantity: Quantity) -> Optional[float]:
        return getattr(self, quantity.value)

@dataclass(frozen=True)
class ParsedRecord:
    """Last complete data row of a DAQS file."""
    timestamp: float
    modules: tuple[ModuleReading, ...]
    width: int

    @property
    def module_count(self) -> int:
        return len(self.modules)

def parse_field(row: List[str], column: int) -> Optional[float]:
    """Parse one numeric field of a row.

    Returns None for an empty (or whitespace only) field. Digit group
    underscores and non-ASCII digits are rejected although float()
    accepts them.

    Raises:
        RecordError: If the field is missing or not a number
    """
    try:
        text = row[column].strip()
    except IndexError:
        raise RecordError(f"Row has no column {column}")
    if not text:
        return None
    if '_' in text or not text.isascii():
        raise RecordError(f"Column {column} holds non-numeric value {text!r}")
    try:
        return float(text)
    except ValueError:
        raise RecordError(f"Column {column} holds non-numeric value {text!r}")

def extract_module(row: List[str], index: int) -> ModuleReading:
    """Read the exported quantities of one module from a row."""
    base = module_base_offset(index)
    values = {
        quantity.value: parse_field(row, base + quantity.column)
        for quantity in Quantity
    }
    return ModuleReading(index=index, **values)

def parse_latest_record(stream: Iterable[str]) -> Optional[ParsedRecord]:
    """Parse the header and the last complete data row of a DAQS file.

    The header is only used for its width, which fixes the module count.
    Rows whose width differs from the header (e.g. a line still being
    written) are not considered. A file whose final line is incomplete
    therefore yields the last complete row before it, which may be the
    record an earlier poll already published, rather than skipping the
    poll.

    Args:
        stream: Open text stream (or any iterable of lines) of the file

    Returns:
        The parsed record, or None if the file has no complete data row

    Raises:
        HeaderError: If the header is missing or too narrow
        RecordError: If the last row cannot be parsed or has no timestamp
    """
    reader = csv.reader(stream)
    try:
        header = next(reader)
    except StopIteration:
        raise HeaderError("csv file doesn't have a header")
    except csv.Error as e:
        raise HeaderError(f"Unreadable csv header: {e}") from e

    width = len(header)
    module_count = module_count_for_width(width)

    last_row = None
    try:
        for row in reader:
            if len(row) == width:
                last_row = row
    except csv.Error as e:
        raise RecordError(f"Malformed csv at line {reader.line_num}: {e}") from e

    if last_row is None:
        return None

    timestamp = parse_field(last_row, TIMESTAMP_COLUMN)
    if timestamp is None:
        raise RecordError("Last row has no dataset timestamp")

    modules = tuple(extract_module(last_row, i) for i in range(module_count))
    return ParsedRecord(timestamp=timestamp, modules=modules, width=width)

def find_newest_data_file(data_dir: Union[str, Path]) -> Optional[Path]:
    """Find the most recently modified csv file in a directory.

    Only regular files are considered; symlinks and directories are
    skipped, as are files that vanish while the directory is scanned.

    Returns:
        Path of the newest file, or None if there is no csv file

    Raises:
        DataSourceError: If the directory cannot be read
    """
    newest: Optional[os.DirEntry] = None
    newest_mtime = 0
    try:
        with os.scandir(data_dir) as entries:
            for entry in entries:
                if not entry.name.endswith(DATA_FILE_SUFFIX):
                    continue
                try:
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    mtime = entry.stat(follow_symlinks=False).st_mtime_ns
                except FileNotFoundError:
                    continue
                if newest is None or mtime > newest_mtime:
                    newest = entry
                    newest_mtime = mtime
    except OSError as e:
        raise DataSourceError(f"Couldn't access data directory {data_dir}: {e}") from e

    return Path(newest.path) if newest else None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics State
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsState:
    """Current module values held as Prometheus gauges.

    Every gauge family lives in a private registry and carries its own
    lock, so a scrape encoding the registry only waits for the single
    set/remove in progress, never for a whole poll. A scrape running
    during an update may see a mix of old and new values.

    The collector is the only writer; the metrics endpoint only reads.
    """

    MODULE_LABEL = 'name'
    TIMESTAMP_NAME = 'timestamp'
    TIMESTAMP_LABELS = {'local': 'cca'}

    def __init__(
        self,
        namespace: str = '',
        registry: Optional[CollectorRegistry] = None
    ):
        self.namespace = namespace
        self.registry = registry if registry is not None else CollectorRegistry()
        self._families: Dict[Quantity, Gauge] = {
            quantity: Gauge(
                quantity.metric_name,
                quantity.description,
                labelnames=[self.MODULE_LABEL],
                namespace=namespace,
                registry=self.registry
            )
            for quantity in Quantity
        }
        self._timestamp = Gauge(
            self.TIMESTAMP_NAME,
            'Timestamp of the dataset',
            labelnames=list(self.TIMESTAMP_LABELS),
            namespace=namespace,
            registry=self.registry
        )
        # module indexes with a series in each family
        self._exported: Dict[Quantity, set[int]] = {quantity: set() for quantity in Quantity}

    def full_name(self, name: str) -> str:
        """Metric name including the namespace prefix."""
        return f"{self.namespace}_{name}" if self.namespace else name

    def update_module(self, quantity: Quantity, index: int, value: Optional[float]) -> None:
        """Set one module's gauge, or remove it when the value is absent."""
        family = self._families[quantity]
        exported = self._exported[quantity]
        name = module_name(index)
        if value is None:
            if index in exported:
                family.remove(name)
                exported.discard(index)
        else:
            family.labels(name).set(value)
            exported.add(index)

    def remove_module(self, index: int) -> None:
        """Drop a module from every family."""
        for quantity in Quantity:
            self.update_module(quantity, index, None)

    def retain_modules(self, count: int) -> List[int]:
        """Remove modules whose index is beyond the current module count.

        Returns:
            Zero-based indexes of the removed modules
        """
        stale = sorted({
            index
            for exported in self._exported.values()
            for index in exported
            if index >= count
        })
        for index in stale:
            self.remove_module(index)
        return stale

    def set_timestamp(self, value: float) -> None:
        self._timestamp.labels(**self.TIMESTAMP_LABELS).set(value)

    def apply(self, record: ParsedRecord) -> None:
        """Publish a parsed record, replacing the values of the previous one."""
        self.retain_modules(record.module_count)
        for reading in record.modules:
            for quantity in Quantity:
                self.update_module(quantity, reading.index, reading.value(quantity))
        self.set_timestamp(record.timestamp)

    def get_value(self, quantity: Quantity, index: int) -> Optional[float]:
        """Currently exported value of one module, or None."""
        return self.registry.get_sample_value(
            self.full_name(quantity.metric_name),
            {self.MODULE_LABEL: module_name(index)}
        )

    @property
    def timestamp(self) -> Optional[float]:
        """Currently exported dataset timestamp, or None."""
        return self.registry.get_sample_value(
            self.full_name(self.TIMESTAMP_NAME),
            self.TIMESTAMP_LABELS
        )

    def snapshot(self) -> bytes:
        """Encode every gauge in the Prometheus text exposition format."""
        return generate_latest(self.registry)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Collection
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CollectionStats:
    """Statistics for poll cycles.

    Attributes:
        attempts (int): Total poll attempts
        successful (int): Polls that updated the metrics
        skipped (int): Polls skipped because of an unreadable file
        empty (int): Polls that found no complete data row
        consecutive_failures (int): Current streak of skipped polls
        last_collection_time (float): Duration of last poll
        total_collection_time (float): Cumulative poll time
        last_collection_datetime (datetime): Timestamp of last poll
        last_error (str): Message of the most recent skipped poll
    """
    attempts: int = 0
    successful: int = 0
    skipped: int = 0
    empty: int = 0
    consecutive_failures: int = 0
    last_collection_time: float = 0
    total_collection_time: float = 0
    last_collection_datetime: datetime = field(
        default_factory=lambda: ProgramConfig.now_utc()
    )
    last_error: Optional[str] = None

    def update_collection_time(self, start_time: float):
        """Update collection timing statistics."""
        collection_time = ProgramConfig.now_utc().timestamp() - start_time
        self.last_collection_time = collection_time
        self.total_collection_time += collection_time
        self.last_collection_datetime = ProgramConfig.now_utc()

    def get_average_collection_time(self) -> float:
        """Calculate average collection time."""
        return self.total_collection_time / self.attempts if self.attempts > 0 else 0

    def is_healthy(self, threshold: int) -> bool:
        """Determine if collection statistics indicate healthy operation."""
        return self.consecutive_failures < threshold

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class DaqsCollector:
    """Reads the newest DAQS file and publishes its last row."""

    def __init__(
        self,
        config: ProgramConfig,
        state: MetricsState,
        logger: logging.Logger
    ):
        self.config = config
        self.state = state
        self.logger = logger
        self.stats = CollectionStats()
        self.current_file: Optional[Path] = None
        self.last_record: Optional[ParsedRecord] = None

    def poll(self) -> bool:
        """Run one poll cycle.

        Unreadable files and malformed rows are logged and leave the
        exported values untouched until the next cycle.

        Returns:
            True if the metrics were updated

        Raises:
            DataSourceError: If the data directory is unusable or holds
                no csv file
        """
        start = ProgramConfig.now_utc().timestamp()
        self.stats.attempts += 1
        try:
            return self._poll()
        finally:
            self.stats.update_collection_time(start)

    def _poll(self) -> bool:
        data_dir = self.config.data_dir
        data_file = find_newest_data_file(data_dir)
        if data_file is None:
            raise DataSourceError(f"No current file found in {data_dir}")

        if data_file != self.current_file:
            self.logger.info(f"Reading data file {data_file}")
            self.current_file = data_file

        try:
            with open(data_file, newline='', encoding='utf-8-sig', errors='replace') as stream:
                record = parse_latest_record(stream)
        except OSError as e:
            return self._skip(f"Unable to open file {data_file}: {e}")
        except HeaderError as e:
            return self._skip(f"{data_file.name}: {e}")
        except RecordError as e:
            return self._skip(f"{data_file.name}: malformed last row: {e}")

        if record is None:
            self.stats.empty += 1
            self.logger.debug(f"{data_file.name} has no complete data row yet")
            return False

        self._apply(record)
        return True

    def _skip(self, message: str) -> bool:
        self.stats.skipped += 1
        self.stats.consecutive_failures += 1
        self.stats.last_error = message
        self.logger.warning(message)
        return False

    def _apply(self, record: ParsedRecord) -> None:
        if self.last_record and self.last_record.module_count > record.module_count:
            self.logger.info(
                f"Module count dropped from {self.last_record.module_count} "
                f"to {record.module_count}"
            )

        self.state.apply(record)

        for reading in record.modules:
            self.logger.verbose(
                lambda: f"{reading.name}: volts={reading.volts} temp={reading.temp} "
                        f"rssi={reading.rssi} power={reading.power}"
            )

        self.last_record = record
        self.stats.successful += 1
        self.stats.consecutive_failures = 0
        self.stats.last_error = None
        self.logger.debug(
            f"Published {record.module_count} modules, dataset timestamp {record.timestamp:.0f}"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# HTTP Endpoints
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """WSGI server handling each request in its own thread."""
    daemon_threads = True

class _LoggingRequestHandler(WSGIRequestHandler):
    """Sends access logs to the program logger instead of stderr."""

    def log_message(self, format, *args):
        logger = getattr(self.server, 'logger', None)
        if logger:
            logger.debug(f"{self.address_string()} {format % args}")

class WsgiEndpoint:
    """Background WSGI server running on a daemon thread."""

    name = "endpoint"

    def __init__(self, host: str, port: int, logger: logging.Logger):
        self.host = host
        self.port = port
        self.logger = logger
        self._server = None
        self._thread = None

    def _create_wsgi_app(self):
        raise NotImplementedError

    @property
    def server_port(self) -> Optional[int]:
        """Port actually bound, useful when started on port 0."""
        return self._server.server_port if self._server else None

    def start(self) -> bool:
        """Start the server in a separate thread."""
        try:
            app = self._create_wsgi_app()
            self._server = make_server(
                self.host,
                self.port,
                app,
                server_class=_ThreadingWSGIServer,
                handler_class=_LoggingRequestHandler
            )
            self._server.logger = self.logger
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name=f"{self.name.title().replace(' ', '')}Server",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Started {self.name} server on {self.host}:{self.server_port}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to start {self.name} server: {e}")
            self._server = None
            return False

    def stop(self) -> None:
        """Stop the server."""

        if not self._server:
            return

        try:
            self.logger.info(f"Stopping {self.name} server")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning(f"{self.name.title()} server thread failed to stop")
        except Exception as e:
            self.logger.error(f"Error stopping {self.name} server: {e}")
        finally:
            self._server = None
            self._thread = None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsServer(WsgiEndpoint):
    """Serves the metrics snapshot on every request, whatever the path."""

    name = "metrics"

    def __init__(self, host: str, port: int, state: MetricsState, logger: logging.Logger):
        super().__init__(host, port, logger)
        self.state = state

    def _create_wsgi_app(self):
        """Create WSGI application answering every request with the snapshot."""
        def app(environ, start_response):
            body = self.state.snapshot()
            start_response('200 OK', [
                ('Content-Type', CONTENT_TYPE_LATEST),
                ('Content-Length', str(len(body)))
            ])
            return [body]

        return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class HealthCheck(WsgiEndpoint):
    """Health check endpoint implementation.

    Endpoints:
        GET /health: Service health status

    Response Format:
        {
            "service": {
                "status": "healthy|unhealthy",
                "up": true,
                ...
            },
            "stats": {
                "collection": {...},
                "configuration": {...}
            },
            "data": {...}
        }
    """

    name = "health check"

    def __init__(
        self,
        config: ProgramConfig,
        collector: DaqsCollector,
        logger: logging.Logger,
        host: Optional[str] = None,
        port: Optional[int] = None
    ):
        super().__init__(
            config.bind_address if host is None else host,
            config.health_port if port is None else port,
            logger
        )
        self.config = config
        self.collector = collector

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def build_status(self) -> Dict[str, Any]:
        """Collect the health document."""
        stats = self.collector.stats
        is_healthy = stats.is_healthy(self.config.failure_threshold)
        record = self.collector.last_record
        current_file = self.collector.current_file

        return {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "version": __version__,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config._start_time.isoformat(),
                "last_poll_datetime_utc": stats.last_collection_datetime.isoformat(),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "collection": {
                    "attempts": stats.attempts,
                    "successful": stats.successful,
                    "skipped": stats.skipped,
                    "empty": stats.empty,
                    "consecutive_failures": stats.consecutive_failures,
                    "failure_threshold": self.config.failure_threshold,
                    "last_error": stats.last_error,
                    "timing": {
                        "last_poll_seconds": round(stats.last_collection_time, 3),
                        "average_poll_seconds": round(stats.get_average_collection_time(), 3)
                    }
                },
                "configuration": {
                    "data_dir": str(self.config.data_dir),
                    "poll_interval_seconds": self.config.poll_interval,
                    "metrics_port": self.config.metrics_port
                }
            },
            "data": {
                "current_file": str(current_file) if current_file else None,
                "module_count": record.module_count if record else None,
                "dataset_timestamp": record.timestamp if record else None
            }
        }

    def _create_wsgi_app(self):
        """Create WSGI application for health checks."""
        def app(environ, start_response):
            try:
                path = environ.get('PATH_INFO', '').rstrip('/')

                if path not in ['', '/health']:
                    start_response('404 Not Found', [('Content-Type', 'application/json')])
                    return [self._create_error_response("error", "Not Found")]

                response = self.build_status()
                status = '200 OK' if response["service"]["status"] == "healthy" else '503 Service Unavailable'
                headers = [
                    ('Content-Type', 'application/json'),
                    ('Cache-Control', 'no-cache, no-store, must-revalidate')
                ]
                start_response(status, headers)
                return [json.dumps(response, indent=2).encode()]

            except Exception as e:
                self.logger.error(f"Health check error: {e}", exc_info=True)
                start_response('500 Internal Server Error', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", str(e))]

        return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class TigoExporter:
    """Main service class for the Tigo DAQS exporter.

    Owns the metrics state, the collector and both HTTP endpoints, and
    runs the poll loop until a shutdown signal or a fatal data source
    error.

    Attributes:
        source (ProgramSource): Program source information
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        state (MetricsState): Exported gauges
        collector (DaqsCollector): Poll cycle implementation
        metrics_server (MetricsServer): Metrics endpoint
        health_check (Optional[HealthCheck]): Health endpoint, None if disabled
    """

    SIGNALS = (signal.SIGTERM, signal.SIGINT)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig,
        logger: logging.Logger
    ):
        self.source = source
        self.config = config
        self.logger = logger
        self.shutdown_event = asyncio.Event()
        self._servers_started = False

        self.state = MetricsState(namespace=config.namespace)
        self.collector = DaqsCollector(config, self.state, logger)
        self.metrics_server = MetricsServer(
            config.bind_address,
            config.metrics_port,
            self.state,
            logger
        )
        self.health_check = (
            HealthCheck(config, self.collector, logger) if config.health_port else None
        )

    def _handle_signal(self, signum: int) -> None:
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        self.shutdown_event.set()

    def check_ports(self) -> bool:
        """Check if required ports are available."""
        port_configs = [(self.config.metrics_port, "metrics")]
        if self.health_check:
            port_configs.append((self.config.health_port, "health check"))

        for port, name in port_configs:
            if not self._check_port_available(port, name):
                return False
        return True

    def _check_port_available(self, port: int, name: str) -> bool:
        """Check if a specific port is available."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.config.bind_address, port))
            return True
        except OSError as e:
            self.logger.error(f"{name.title()} port {port} is not available: {e}")
            return False
        finally:
            sock.close()

    def _start_servers(self) -> bool:
        """Start metrics and health check servers."""
        if not self.metrics_server.start():
            return False

        if self.health_check and not self.health_check.start():
            self.metrics_server.stop()
            return False

        self._servers_started = True
        return True

    def _stop_servers(self) -> None:
        if not self._servers_started:
            return
        if self.health_check:
            self.health_check.stop()
        self.metrics_server.stop()
        self._servers_started = False

    async def collect_loop(self) -> int:
        """Poll the data directory until shutdown.

        Returns:
            0 on shutdown request, 1 on a fatal data source error
        """
        self.logger.info(
            f"Polling {self.config.data_dir} every {self.config.poll_interval}s"
        )
        while not self.shutdown_event.is_set():
            try:
                await asyncio.to_thread(self.collector.poll)
            except DataSourceError as e:
                self.logger.critical(f"{e}, terminating")
                return 1
            except Exception as e:
                self.logger.error(f"Error in poll loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self.shutdown_event.wait(),
                    timeout=self.config.poll_interval
                )
            except asyncio.TimeoutError:
                continue

        self.logger.info("Shutdown event received, stopping service")
        return 0

    async def run(self) -> int:
        """Main service loop."""
        loop = asyncio.get_running_loop()
        for signum in self.SIGNALS:
            loop.add_signal_handler(signum, self._handle_signal, signum)

        try:
            if not self.check_ports():
                self.logger.error("Required ports are not available")
                return 1

            if not self._start_servers():
                return 1

            if self.config.running_under_systemd:
                notify(Notification.READY)

            return await self.collect_loop()

        except Exception as e:
            self.logger.exception(f"Fatal error in service: {e}")
            return 1

        finally:
            for signum in self.SIGNALS:
                loop.remove_signal_handler(signum)
            if self.config.running_under_systemd:
                notify(Notification.STOPPING)
            self._stop_servers()
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main(source: Optional[ProgramSource] = None) -> int:
    """Entry point for the exporter service."""
    try:
        source = source or ProgramSource()
        config = ProgramConfig(source)
        config.load()
        program_logger = ProgramLogger(source, config)
    except Exception as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    logger = program_logger.logger
    logger.info(f"Tigo DAQS exporter v{__version__} starting")
    logger.info(config.describe_source())

    try:
        exporter = TigoExporter(source, config, logger)
        return await exporter.run()
    finally:
        program_logger.close()

def cli() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))

if __name__ == '__main__':
    cli()
