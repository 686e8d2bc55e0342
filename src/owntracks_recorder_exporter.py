#!/opt/owntracks-exporter/venv/bin/python3 -u

"""
OwnTracks Recorder Exporter

Description:
---------------------

Prometheus exporter for an OwnTracks recorder storage directory:
- Discovers known devices from the recorder's last/ hierarchy
- Counts location points and LWT markers in the rec/ files
- Recomputes per-device totals on every scrape
- Health check endpoint with scan statistics
- Systemd integration (readiness notification, journal logging)

Usage:
---------------------
1. Optionally create a YAML configuration file next to the script, or point
   OWNTRACKS_EXPORTER_CONFIG at one
2. Make sure the exporter user can read the recorder storage directory
3. Run the script directly or via systemd service
4. Monitor metrics at http://localhost:9192/metrics
5. Check service health at http://localhost:9192/health

Configuration:
---------------------

exporter:
    bind_host: "0.0.0.0"        # IP address to listen on
    bind_port: 9192             # Metrics and health port
    storage_dir: "/otr-storage" # Recorder storage root
    scan:
        timeout_sec: 30         # Per-scrape scan deadline, 0 disables
        failure_threshold: 20   # Unreadable scans before unhealthy
    self_check:
        enabled: true           # Request own metrics once at startup
        timeout_sec: 10
    logging:
        level: "INFO"           # Main logging level
        console_level: "INFO"   # Console output level
        file: null              # Log file path, enables file logging
        file_level: "DEBUG"     # File logging level
        journal_level: "WARNING"  # Systemd journal level
        max_bytes: 10485760     # Log file size limit (10MB)
        backup_count: 3         # Log file rotation count
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

Environment overrides:
    OWNTRACKS_EXPORTER_BIND_HOST, OWNTRACKS_EXPORTER_BIND_PORT,
    OTR_STORAGEDIR, OWNTRACKS_EXPORTER_LOG_LEVEL

Storage Layout:
---------------------

<storage_dir>/last/<user>/<device>/     existence registers the device
<storage_dir>/rec/<user>/<device>/*     one event per line, second field
                                        "*" is a point, "lwt" an LWT

Exported Metrics:
---------------------
owntracks_recorder_points_total{user,device}
owntracks_recorder_lwts_total{user,device}

Both are gauges holding the absolute totals found by the latest scan. They
can go down when record files are truncated.

Health Check API:
---------------------
GET /health
Returns service health status and scan statistics

Response Codes:
    200: Service healthy
    503: Storage unreadable for failure_threshold consecutive scans
    404: Invalid endpoint

Dependencies:
---------------------
- Python 3.11+
- prometheus_client
- pyyaml
- requests
- cysystemd (for systemd integration)

Notes:
---------------------
- All timestamps are in UTC
- The storage directory is only read, never written
- Devices removed from last/ keep their last published values until restart
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import ipaddress
import json
import logging
import os
import signal
import socket
import sys
import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import (
    Any, Callable, Dict, Iterator, List, Mapping, Optional, Union
)
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

# Third party imports
from prometheus_client import (
    CollectorRegistry, Counter, GCCollector, Gauge, PlatformCollector,
    ProcessCollector, make_wsgi_app
)
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import requests
import yaml

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterError(Exception):
    """Base class for exporter errors."""
    pass

class ExporterConfigurationError(ExporterError):
    """Error in exporter configuration."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source, Configuration and Logging
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file locations."""
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
    def default_config_path(self) -> Path:
        """Config file looked up next to the script."""
        return self.script_dir / f"{self.base_name}.yml"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Program configuration with defaults, YAML file and environment overrides."""

    DEFAULT_BIND_HOST = '0.0.0.0'
    DEFAULT_BIND_PORT = 9192
    DEFAULT_STORAGE_DIR = '/otr-storage'
    DEFAULT_SCAN_TIMEOUT = 30
    DEFAULT_FAILURE_THRESHOLD = 20
    DEFAULT_SELF_CHECK_ENABLED = True
    DEFAULT_SELF_CHECK_TIMEOUT = 10

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    # Environment variables
    ENV_CONFIG_PATH = 'OWNTRACKS_EXPORTER_CONFIG'
    ENV_BIND_HOST = 'OWNTRACKS_EXPORTER_BIND_HOST'
    ENV_BIND_PORT = 'OWNTRACKS_EXPORTER_BIND_PORT'
    ENV_STORAGE_DIR = 'OTR_STORAGEDIR'
    ENV_LOG_LEVEL = 'OWNTRACKS_EXPORTER_LOG_LEVEL'

    def __init__(
        self,
        source: ProgramSource,
        environ: Optional[Mapping[str, str]] = None
    ):
        """Initialize configuration manager.

        Args:
            source: Program source information
            environ: Environment to read overrides from, defaults to os.environ
        """
        self._source = source
        self._environ = os.environ if environ is None else environ
        self._config = {'exporter': self._get_exporter_defaults()}
        self._config_path: Optional[Path] = None
        self._running_under_systemd = bool(self._environ.get('INVOCATION_ID'))
        self._start_time = self.now_utc()

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'bind_host': self.DEFAULT_BIND_HOST,
            'bind_port': self.DEFAULT_BIND_PORT,
            'storage_dir': self.DEFAULT_STORAGE_DIR,
            'scan': {
                'timeout_sec': self.DEFAULT_SCAN_TIMEOUT,
                'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD
            },
            'self_check': {
                'enabled': self.DEFAULT_SELF_CHECK_ENABLED,
                'timeout_sec': self.DEFAULT_SELF_CHECK_TIMEOUT
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'file': self.DEFAULT_LOG_FILE,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def _resolve_config_path(self) -> Optional[Path]:
        """Find the config file, if any."""
        explicit = self._environ.get(self.ENV_CONFIG_PATH)
        if explicit:
            path = Path(explicit)
            if path.is_file() and os.access(path, os.R_OK):
                return path
            raise ExporterConfigurationError(f"Config file {path} not found")

        path = self._source.default_config_path
        if path.is_file():
            return path
        return None

    def load(self) -> None:
        """Load configuration from defaults, config file and environment."""
        new_config = {'exporter': self._get_exporter_defaults()}

        config_path = self._resolve_config_path()
        if config_path is not None:
            try:
                with open(config_path) as f:
                    file_config = yaml.safe_load(f) or {}
            except Exception as e:
                raise ExporterConfigurationError(f"Failed to load config file: {e}")

            if not isinstance(file_config, dict):
                raise ExporterConfigurationError("Config file must contain a mapping")

            exporter_config = file_config.get('exporter') or {}
            if not isinstance(exporter_config, dict):
                raise ExporterConfigurationError("'exporter' section must be a dictionary")

            # Merge while preserving defaults for missing values
            new_config['exporter'] = self._merge_with_defaults(
                new_config['exporter'],
                exporter_config
            )

        self._apply_environment(new_config['exporter'])
        self._validate_exporter_section(new_config['exporter'])

        self._config = new_config
        self._config_path = config_path

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _apply_environment(self, exporter: Dict[str, Any]) -> None:
        """Apply environment variable overrides in place."""
        if self.ENV_BIND_HOST in self._environ:
            exporter['bind_host'] = self._environ[self.ENV_BIND_HOST]

        if self.ENV_BIND_PORT in self._environ:
            raw_port = self._environ[self.ENV_BIND_PORT]
            try:
                exporter['bind_port'] = int(raw_port)
            except ValueError:
                raise ExporterConfigurationError(
                    f"Invalid {self.ENV_BIND_PORT} value: {raw_port!r}"
                )

        if self.ENV_STORAGE_DIR in self._environ:
            exporter['storage_dir'] = self._environ[self.ENV_STORAGE_DIR]

        if self.ENV_LOG_LEVEL in self._environ and isinstance(exporter.get('logging'), dict):
            level = self._environ[self.ENV_LOG_LEVEL].upper()
            exporter['logging']['level'] = level
            exporter['logging']['console_level'] = level

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Basic validation of exporter configuration."""
        for section in ['scan', 'self_check', 'logging']:
            if not isinstance(config.get(section), dict):
                raise ExporterConfigurationError(f"'{section}' section must be a dictionary")

        bind_host = config['bind_host']
        try:
            ipaddress.ip_address(str(bind_host))
        except ValueError:
            raise ExporterConfigurationError(
                f"This doesn't seem to be a valid bind address: {bind_host}"
            )

        bind_port = config['bind_port']
        if isinstance(bind_port, bool) or not isinstance(bind_port, int) or bind_port < 1 or bind_port > 65535:
            raise ExporterConfigurationError(f"Invalid bind_port {bind_port}")

        storage_dir = config['storage_dir']
        if not isinstance(storage_dir, str) or not storage_dir:
            raise ExporterConfigurationError(f"Invalid storage_dir {storage_dir!r}")

        scan = config['scan']
        timeout = scan.get('timeout_sec')
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0:
            raise ExporterConfigurationError(f"Invalid scan.timeout_sec {timeout}")

        threshold = scan.get('failure_threshold')
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise ExporterConfigurationError(f"Invalid scan.failure_threshold {threshold}")

        level = str(config['logging'].get('level')).upper()
        if level != 'VERBOSE' and not isinstance(logging.getLevelName(level), int):
            raise ExporterConfigurationError(f"Invalid logging.level {level}")

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def config_path(self) -> Optional[Path]:
        """Config file used by the last load, if any."""
        return self._config_path

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
    def scan(self) -> Dict[str, Any]:
        """Get scan configuration."""
        return self.exporter.get('scan', {})

    @property
    def self_check(self) -> Dict[str, Any]:
        """Get startup self-check configuration."""
        return self.exporter.get('self_check', {})

    @property
    def bind_host(self) -> str:
        """Get address to listen on."""
        return str(self.exporter.get('bind_host', self.DEFAULT_BIND_HOST))

    @property
    def bind_port(self) -> int:
        """Get port to listen on."""
        return self.exporter.get('bind_port', self.DEFAULT_BIND_PORT)

    @property
    def bind_address(self) -> str:
        """Get host:port string, bracketing IPv6 hosts."""
        if ipaddress.ip_address(self.bind_host).version == 6:
            return f"[{self.bind_host}]:{self.bind_port}"
        return f"{self.bind_host}:{self.bind_port}"

    @property
    def storage_dir(self) -> Path:
        """Get recorder storage root."""
        return Path(self.exporter.get('storage_dir', self.DEFAULT_STORAGE_DIR))

    @property
    def scan_timeout(self) -> float:
        """Get scan deadline in seconds, 0 when disabled."""
        return self.scan.get('timeout_sec', self.DEFAULT_SCAN_TIMEOUT)

    @property
    def failure_threshold(self) -> int:
        """Get failure threshold count."""
        return self.scan.get('failure_threshold', self.DEFAULT_FAILURE_THRESHOLD)

    @property
    def self_check_enabled(self) -> bool:
        """Whether to request our own metrics once at startup."""
        return bool(self.self_check.get('enabled', self.DEFAULT_SELF_CHECK_ENABLED))

    @property
    def self_check_timeout(self) -> float:
        """Get self-check request timeout in seconds."""
        return self.self_check.get('timeout_sec', self.DEFAULT_SELF_CHECK_TIMEOUT)

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
    def get_logger(cls, name: str) -> 'ProgramLogger.VerboseLogger':
        """Get a named logger supporting the VERBOSE level."""
        logging.addLevelName(cls.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(cls.VerboseLogger)
        return logging.getLogger(name)

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
        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}

        self._logger = self._setup_logging()

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration with defaults filled in."""
        logging_config = self.config.logging
        return {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL),
            'file': logging_config.get('file', self.config.DEFAULT_LOG_FILE),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance

        Note:
            If handler setup fails, ensures at least basic console logging
            is available as a fallback.
        """
        logger = self.get_logger(self.source.logger_name)
        logger.handlers.clear()

        log_settings = self._get_logging_config()
        logger.setLevel(str(log_settings['level']).upper())

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        try:
            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(str(log_settings['console_level']).upper())
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # File handler
            if log_settings['file']:
                file_handler = RotatingFileHandler(
                    log_settings['file'],
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setLevel(str(log_settings['file_level']).upper())
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                self._handlers['file'] = file_handler

            # Journal handler for systemd
            if self.config.running_under_systemd:
                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(str(log_settings['journal_level']).upper())
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            # If handler setup fails, ensure we have at least a basic console handler
            if not logger.handlers:
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
# Storage Model
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True, eq=True)
class StorageDevice:
    """A device known to the recorder, named verbatim after its directories."""
    user_name: str
    device_name: str

@dataclass(frozen=True)
class StorageDeviceStats:
    """Record counts for a device or a single record file."""
    points_count_total: int = 0
    lwts_count_total: int = 0

    def __add__(self, other: 'StorageDeviceStats') -> 'StorageDeviceStats':
        if not isinstance(other, StorageDeviceStats):
            return NotImplemented
        return StorageDeviceStats(
            points_count_total=self.points_count_total + other.points_count_total,
            lwts_count_total=self.lwts_count_total + other.lwts_count_total
        )

@dataclass
class ReadResult:
    """Outcome of a single filesystem read."""
    success: bool
    value: Any = None
    error: Optional[str] = None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class EntryKind(Enum):
    """Kinds of directory entries the lister can select."""
    DIRECTORY = "directory"
    FILE = "file"

    def matches(self, entry: os.DirEntry) -> bool:
        """Check the entry type, following symlinks. May raise OSError."""
        if self == EntryKind.DIRECTORY:
            return entry.is_dir()
        return entry.is_file()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class RecordKind(Enum):
    """Record line types, keyed by the line's second field."""
    POINT = "*"   # Location fix
    LWT = "lwt"   # Last will and testament, device went offline

    @classmethod
    def from_line(cls, line: str) -> Optional['RecordKind']:
        """Classify a record line, None if it is neither point nor LWT."""
        fields = line.split()
        if len(fields) < 2:
            return None
        try:
            return cls(fields[1])
        except ValueError:
            return None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class ScanStats:
    """Statistics for storage scans.

    Tracks scan outcomes and timing information for health monitoring
    and the exporter's own metrics.

    Attributes:
        attempts (int): Total scans started
        successful (int): Scans that could read the last/ directory
        errors (int): Filesystem errors logged across all scans
        consecutive_failures (int): Current streak of unreadable scans
        deadline_exceeded (int): Scans cut short by the scan deadline
        devices (int): Devices found by the latest scan
        last_scan_time (float): Duration of last scan
        total_scan_time (float): Cumulative scan time
        last_scan_datetime (datetime): Timestamp of last scan
    """
    attempts: int = 0
    successful: int = 0
    errors: int = 0
    consecutive_failures: int = 0
    deadline_exceeded: int = 0
    devices: int = 0
    last_scan_time: float = 0
    total_scan_time: float = 0
    last_scan_datetime: Optional[datetime] = None

    def record_scan(
        self,
        duration: float,
        devices: int,
        errors: int,
        storage_available: bool
    ) -> None:
        """Fold the outcome of one finished scan into the statistics."""
        self.devices = devices
        self.errors += errors
        if storage_available:
            self.successful += 1
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
        self.last_scan_time = duration
        self.total_scan_time += duration
        self.last_scan_datetime = ProgramConfig.now_utc()

    def get_average_scan_time(self) -> float:
        """Calculate average scan time."""
        return self.total_scan_time / self.attempts if self.attempts > 0 else 0

    def is_healthy(self, threshold: int) -> bool:
        """Determine if scan statistics indicate healthy operation."""
        return self.consecutive_failures < threshold

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Storage Scanning
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class DirectoryLister:
    """Lists the immediate children of a directory.

    Every filesystem call yields a ReadResult. Failures are logged and
    counted in ``errors``; they never abort a listing.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.errors = 0

    def _record_failure(self, result: ReadResult) -> None:
        self.errors += 1
        self.logger.error(result.error)

    def _open(self, path: Path) -> ReadResult:
        try:
            return ReadResult(success=True, value=os.scandir(path))
        except OSError as e:
            return ReadResult(success=False, error=f"Failed to open directory {path}: {e}")

    def _next_entry(self, iterator: Iterator[os.DirEntry], path: Path) -> ReadResult:
        """Advance the directory stream. A successful None value marks the end."""
        try:
            return ReadResult(success=True, value=next(iterator, None))
        except OSError as e:
            return ReadResult(success=False, error=f"Failed to read directory {path}: {e}")

    def _inspect(self, entry: os.DirEntry, kind: EntryKind) -> ReadResult:
        try:
            return ReadResult(success=True, value=kind.matches(entry))
        except OSError as e:
            return ReadResult(success=False, error=f"Failed to read entry {entry.path}: {e}")

    @staticmethod
    def _is_text(name: str) -> bool:
        """Undecodable names come back from scandir as surrogate escapes."""
        try:
            name.encode('utf-8')
        except UnicodeEncodeError:
            return False
        return True

    def scan(self, path: Path, kind: EntryKind) -> ReadResult:
        """List entry names of the given kind, in discovery order.

        The result only fails when the directory itself cannot be opened;
        its value is then an empty list. Unreadable entries are skipped.
        """
        opened = self._open(path)
        if not opened.success:
            self._record_failure(opened)
            return ReadResult(success=False, value=[], error=opened.error)

        names = []
        with opened.value as iterator:
            while True:
                step = self._next_entry(iterator, path)
                if not step.success:
                    # The stream is unusable after a read error
                    self._record_failure(step)
                    break

                entry = step.value
                if entry is None:
                    break
                if not self._is_text(entry.name):
                    continue

                inspected = self._inspect(entry, kind)
                if not inspected.success:
                    self._record_failure(inspected)
                    continue
                if inspected.value:
                    names.append(entry.name)

        return ReadResult(success=True, value=names)

    def list_entries(self, path: Path, kind: EntryKind) -> List[str]:
        """List entry names of the given kind, empty when unreadable."""
        return self.scan(path, kind).value

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class DeviceEnumerator:
    """Finds known devices from the last/<user>/<device>/ directories."""

    def __init__(self, storage_dir: Path, lister: DirectoryLister, logger: ProgramLogger.VerboseLogger):
        self.last_dir = Path(storage_dir) / 'last'
        self.lister = lister
        self.logger = logger
        self.storage_available = True

    def enumerate_devices(self) -> List[StorageDevice]:
        """Return every (user, device) pair present under last/."""
        users = self.lister.scan(self.last_dir, EntryKind.DIRECTORY)
        self.storage_available = users.success

        devices = []
        for user_name in users.value:
            for device_name in self.lister.list_entries(self.last_dir / user_name, EntryKind.DIRECTORY):
                devices.append(StorageDevice(user_name, device_name))

        self.logger.verbose(lambda: f"Known devices: {[(d.user_name, d.device_name) for d in devices]}")
        return devices

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class RecordFileParser:
    """Counts points and LWT markers in a single record file."""

    def __init__(self, logger: ProgramLogger.VerboseLogger):
        self.logger = logger
        self.errors = 0

    def _open(self, path: Path):
        # Torn multi-byte sequences from in-progress writes become malformed lines
        return open(path, encoding='utf-8', errors='replace', newline='\n')

    def parse(self, directory: Path, file_name: str) -> ReadResult:
        """Parse one record file.

        Returns:
            ReadResult holding StorageDeviceStats on success. A file that
            cannot be opened or read gives an unsuccessful result and its
            partial counts are dropped.
        """
        path = Path(directory) / file_name
        points = 0
        lwts = 0

        try:
            with self._open(path) as f:
                for line in f:
                    kind = RecordKind.from_line(line)
                    if kind == RecordKind.POINT:
                        points += 1
                    elif kind == RecordKind.LWT:
                        lwts += 1
        except OSError as e:
            self.errors += 1
            self.logger.error(f"Failed to read record file {path}: {e}")
            return ReadResult(success=False, error=str(e))

        self.logger.verbose(lambda: f"{path}: {points} points, {lwts} lwts")
        return ReadResult(
            success=True,
            value=StorageDeviceStats(points_count_total=points, lwts_count_total=lwts)
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class StatsAggregator:
    """Sums record file counts for a device directory."""

    def __init__(self, lister: DirectoryLister, parser: RecordFileParser):
        self.lister = lister
        self.parser = parser

    def aggregate(self, directory: Path) -> StorageDeviceStats:
        """Total counts over every regular file in the directory; failed files count zero."""
        results = [
            self.parser.parse(directory, file_name)
            for file_name in self.lister.list_entries(directory, EntryKind.FILE)
        ]
        return sum(
            (result.value for result in results if result.success),
            StorageDeviceStats()
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterMetrics:
    """Metric series registered once at startup.

    The per-device totals are gauges: each scan sets the absolute value it
    found, so a total goes down when a record file shrinks.
    """

    POINTS_METRIC = 'owntracks_recorder_points_total'
    LWTS_METRIC = 'owntracks_recorder_lwts_total'
    DEVICE_LABELS = ('user', 'device')

    def __init__(self, registry: CollectorRegistry):
        self.registry = registry
        self._start_time = ProgramConfig.now_utc()

        self.points = Gauge(
            self.POINTS_METRIC,
            'Number of location points recorded for the device',
            labelnames=self.DEVICE_LABELS,
            registry=registry
        )
        self.lwts = Gauge(
            self.LWTS_METRIC,
            'Number of LWT (last will and testament) markers recorded for the device',
            labelnames=self.DEVICE_LABELS,
            registry=registry
        )
        self._setup_internal_metrics()

    def _setup_internal_metrics(self) -> None:
        """Set up internal metrics tracking."""
        self._internal_metrics = {
            'scan_duration': Gauge(
                'owntracks_exporter_scan_duration_seconds',
                'Duration of the last storage scan in seconds',
                registry=self.registry
            ),
            'last_scan_unix_seconds': Gauge(
                'owntracks_exporter_last_scan_unix_seconds',
                'Unix timestamp of the last storage scan with millisecond precision',
                registry=self.registry
            ),
            'devices': Gauge(
                'owntracks_exporter_devices',
                'Number of devices found by the last storage scan',
                registry=self.registry
            ),
            'scan_errors': Counter(
                'owntracks_exporter_scan_errors',
                'Total number of filesystem errors during storage scans',
                registry=self.registry
            ),
            'uptime': Gauge(
                'owntracks_exporter_uptime_seconds',
                'Time since service start in seconds',
                registry=self.registry
            )
        }

    def publish(self, device: StorageDevice, stats: StorageDeviceStats) -> None:
        """Overwrite the device's series with freshly computed totals."""
        labels = {'user': device.user_name, 'device': device.device_name}
        self.points.labels(**labels).set(stats.points_count_total)
        self.lwts.labels(**labels).set(stats.lwts_count_total)

    def update_internal(self, stats: ScanStats, errors: int = 0) -> None:
        """Update internal metrics from scan statistics."""
        scan_time = round(ProgramConfig.now_utc().timestamp(), 3)
        uptime = (ProgramConfig.now_utc() - self._start_time).total_seconds()

        self._internal_metrics['scan_duration'].set(stats.last_scan_time)
        self._internal_metrics['last_scan_unix_seconds'].set(scan_time)
        self._internal_metrics['devices'].set(stats.devices)
        self._internal_metrics['scan_errors'].inc(errors)
        self._internal_metrics['uptime'].set(uptime)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class StorageAccountant:
    """Recomputes per-device record totals and publishes them.

    ``update`` is the only entry point. It rescans the whole storage tree,
    so it is invoked once per scrape and once at startup.
    """

    def __init__(
        self,
        storage_dir: Union[str, Path],
        metrics: ExporterMetrics,
        logger: ProgramLogger.VerboseLogger,
        scan_timeout: float = 0,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the accountant.

        Args:
            storage_dir: Recorder storage root
            metrics: Registered exporter metrics
            logger: Configured logger instance
            scan_timeout: Seconds after which remaining devices are skipped, 0 disables
            clock: Monotonic time source
        """
        self.storage_dir = Path(storage_dir)
        self.rec_dir = self.storage_dir / 'rec'
        self.metrics = metrics
        self.logger = logger
        self.scan_timeout = scan_timeout
        self._clock = clock
        self.lock = threading.RLock()

        self.stats = ScanStats()
        self.lister = DirectoryLister(logger)
        self.parser = RecordFileParser(logger)
        self.enumerator = DeviceEnumerator(self.storage_dir, self.lister, logger)
        self.aggregator = StatsAggregator(self.lister, self.parser)

    def update(self) -> None:
        """Rescan storage and overwrite every known device's series."""
        with self.lock:
            self._update()

    def _deadline_exceeded(self, scan_start: float) -> bool:
        return self.scan_timeout > 0 and self._clock() - scan_start > self.scan_timeout

    def _update(self) -> None:
        scan_start = self._clock()
        self.stats.attempts += 1
        self.lister.errors = 0
        self.parser.errors = 0

        devices = self.enumerator.enumerate_devices()
        self.logger.debug(f"Scanning {len(devices)} devices under {self.storage_dir}")

        aggregated: Dict[StorageDevice, StorageDeviceStats] = {}
        for index, device in enumerate(devices):
            if self._deadline_exceeded(scan_start):
                self.stats.deadline_exceeded += 1
                self.logger.warning(
                    f"Scan deadline of {self.scan_timeout}s exceeded, "
                    f"{len(devices) - index} of {len(devices)} devices keep their previous values"
                )
                break
            device_dir = self.rec_dir / device.user_name / device.device_name
            aggregated[device] = self.aggregator.aggregate(device_dir)

        for device, device_stats in aggregated.items():
            self.metrics.publish(device, device_stats)

        errors = self.lister.errors + self.parser.errors
        duration = self._clock() - scan_start
        self.stats.record_scan(
            duration=duration,
            devices=len(devices),
            errors=errors,
            storage_available=self.enumerator.storage_available
        )
        self.metrics.update_internal(self.stats, errors)

        self.logger.debug(
            f"Storage scan completed in {duration:.3f}s: "
            f"{len(aggregated)}/{len(devices)} devices updated, {errors} errors"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# HTTP Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """WSGI server handling each request in its own thread."""
    daemon_threads = True

class ThreadingWSGIServerV6(ThreadingWSGIServer):
    """IPv6 variant of ThreadingWSGIServer."""
    address_family = socket.AF_INET6

class LoggingRequestHandler(WSGIRequestHandler):
    """Routes request logs to the program logger instead of stderr."""

    def log_message(self, format, *args):
        logger = getattr(self.server, 'logger', None)
        if logger:
            logger.debug(f"{self.address_string()} - {format % args}")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsServer:
    """Metrics and health check endpoint.

    Endpoints:
        GET /, GET /metrics: Rescan storage, then serve Prometheus metrics
        GET /health: Service health status

    Health Response Format:
        {
            "service": {
                "status": "healthy|unhealthy",
                "up": true,
                ...
            },
            "stats": {
                "scan": {...},
                "configuration": {...}
            },
            "storage": {...}
        }
    """

    def __init__(
        self,
        config: ProgramConfig,
        accountant: StorageAccountant,
        registry: CollectorRegistry,
        logger: logging.Logger
    ):
        self.config = config
        self.accountant = accountant
        self.registry = registry
        self.logger = logger
        self._server = None
        self._thread = None

    def start(self) -> bool:
        """Start the HTTP server in a separate thread."""
        try:
            app = self.create_wsgi_app()
            server_class = ThreadingWSGIServer
            if ipaddress.ip_address(self.config.bind_host).version == 6:
                server_class = ThreadingWSGIServerV6
            self._server = make_server(
                self.config.bind_host,
                self.config.bind_port,
                app,
                server_class=server_class,
                handler_class=LoggingRequestHandler
            )
            self._server.logger = self.logger
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="MetricsServer",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Started metrics server on {self.config.bind_address}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to start metrics server on {self.config.bind_address}: {e}")
            return False

    def stop(self) -> None:
        """Stop the HTTP server."""

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
        except Exception as e:
            self.logger.error(f"Error stopping metrics server: {e}")
        finally:
            self._server = None
            self._thread = None

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def _get_health(self) -> Dict[str, Any]:
        """Build the health report."""
        stats = self.accountant.stats
        is_healthy = stats.is_healthy(self.config.failure_threshold)
        return {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config._start_time.isoformat(),
                "last_scan_datetime_utc": (
                    stats.last_scan_datetime.isoformat() if stats.last_scan_datetime else None
                ),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "scan": {
                    "attempts": stats.attempts,
                    "successful": stats.successful,
                    "errors": stats.errors,
                    "consecutive_failures": stats.consecutive_failures,
                    "failure_threshold": self.config.failure_threshold,
                    "deadline_exceeded": stats.deadline_exceeded,
                    "devices": stats.devices,
                    "timing": {
                        "last_scan_seconds": round(stats.last_scan_time, 3),
                        "average_scan_seconds": round(stats.get_average_scan_time(), 3)
                    }
                },
                "configuration": {
                    "bind_address": self.config.bind_address,
                    "scan_timeout_seconds": self.config.scan_timeout,
                    "config_file": str(self.config.config_path) if self.config.config_path else None
                }
            },
            "storage": {
                "path": str(self.accountant.storage_dir),
                "available": self.accountant.enumerator.storage_available
            }
        }

    def create_wsgi_app(self):
        """Create WSGI application serving metrics and health."""
        metrics_app = make_wsgi_app(self.registry)

        def app(environ, start_response):
            try:
                path = environ.get('PATH_INFO', '').rstrip('/')

                if path in ['', '/metrics']:
                    # Rendered under the lock so a scrape sees a single scan
                    with self.accountant.lock:
                        self.accountant.update()
                        return metrics_app(environ, start_response)

                if path != '/health':
                    start_response('404 Not Found', [('Content-Type', 'application/json')])
                    return [self._create_error_response("error", "Not Found")]

                health = self._get_health()
                is_healthy = health["service"]["status"] == "healthy"
                status = '200 OK' if is_healthy else '503 Service Unavailable'
                headers = [
                    ('Content-Type', 'application/json'),
                    ('Cache-Control', 'no-cache, no-store, must-revalidate')
                ]
                start_response(status, headers)
                return [json.dumps(health, indent=2).encode()]

            except Exception as e:
                self.logger.error(f"Request error: {e}", exc_info=True)
                start_response(
                    '500 Internal Server Error',
                    [('Content-Type', 'application/json')],
                    sys.exc_info()
                )
                return [self._create_error_response("error", str(e))]

        return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class StartupSelfCheck:
    """Requests our own metrics once the server is up."""

    def __init__(self, config: ProgramConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    @property
    def url(self) -> str:
        """Metrics URL reachable from this host."""
        host = self.config.bind_host
        if host == '0.0.0.0':
            host = '127.0.0.1'
        elif host == '::':
            host = '::1'
        if ipaddress.ip_address(host).version == 6:
            host = f"[{host}]"
        return f"http://{host}:{self.config.bind_port}/metrics"

    def run(self) -> bool:
        """Fetch the metrics page and log it."""
        try:
            response = requests.get(self.url, timeout=self.config.self_check_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.error(f"Startup self-check of {self.url} failed: {e}")
            return False

        self.logger.info(f"Initial metrics look fine:\n{response.text}")
        return True

    def start(self) -> threading.Thread:
        """Run the self-check in a background thread."""
        thread = threading.Thread(target=self.run, name="StartupSelfCheck", daemon=True)
        thread.start()
        return thread

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsExporter:
    """Main service class for the OwnTracks recorder exporter.

    This class manages the lifecycle of the service: the initial scan,
    server startup/shutdown, the startup self-check and systemd
    notifications. Scans happen on demand, one per scrape.

    Attributes:
        source (ProgramSource): Program source information
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        registry (CollectorRegistry): Registry all series are registered in
        accountant (StorageAccountant): Storage scanner and publisher
        server (MetricsServer): Metrics and health endpoint
        shutdown_event (asyncio.Event): Event for coordinating shutdown

    Raises:
        ValueError: If the exporter's metric names collide in the registry
    """

    HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig,
        logger: logging.Logger,
        registry: CollectorRegistry
    ):
        """Initialize the exporter service.

        Args:
            source: Program source information
            config: Program configuration
            logger: Configured logger instance
            registry: Metric registry, created once at startup
        """
        self.source = source
        self.config = config
        self.logger = logger
        self.registry = registry
        self.shutdown_event = asyncio.Event()

        self.logger.info("Starting exporter initialization")

        self.metrics = ExporterMetrics(self.registry)
        self.accountant = StorageAccountant(
            self.config.storage_dir,
            self.metrics,
            self.logger,
            scan_timeout=self.config.scan_timeout
        )
        self.server = MetricsServer(self.config, self.accountant, self.registry, self.logger)
        self.self_check = StartupSelfCheck(self.config, self.logger)

        self.logger.info(f"Exporter initialized for storage {self.config.storage_dir}")

    def _handle_signal(self, signum: int) -> None:
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        self.shutdown_event.set()

    def _cleanup(self) -> None:
        """Stop the server and notify systemd."""
        try:
            self.server.stop()
        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")
        finally:
            if self.config.running_under_systemd:
                notify(Notification.STOPPING)

    async def run(self) -> int:
        """Main service loop."""
        loop = asyncio.get_running_loop()
        for signum in self.HANDLED_SIGNALS:
            loop.add_signal_handler(signum, self._handle_signal, signum)

        try:
            # First scan before serving so the first scrape is never empty
            self.accountant.update()

            if not self.server.start():
                return 1

            if self.config.self_check_enabled:
                self.self_check.start()

            # Notify systemd we're ready
            if self.config.running_under_systemd:
                notify(Notification.READY)

            await self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping service")
            return 0

        except asyncio.CancelledError:
            self.logger.warning("Service operation cancelled")
            raise

        except Exception as e:
            self.logger.exception(f"Fatal error in service: {e}")
            return 1

        finally:
            self._cleanup()
            for signum in self.HANDLED_SIGNALS:
                loop.remove_signal_handler(signum)
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main() -> int:
    """Entry point for the exporter service."""
    program_logger = None
    try:
        source = ProgramSource()
        config = ProgramConfig(source)
        config.load()
        program_logger = ProgramLogger(source, config)
        logger = program_logger.logger
        logger.info(f"Configuration loaded from {config.config_path or 'defaults and environment'}")

        registry = CollectorRegistry()
        ProcessCollector(registry=registry)
        PlatformCollector(registry=registry)
        GCCollector(registry=registry)

        exporter = MetricsExporter(source, config, logger, registry)
        return await exporter.run()

    except Exception as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    finally:
        if program_logger:
            program_logger.close()

def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))

if __name__ == '__main__':
    run()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
