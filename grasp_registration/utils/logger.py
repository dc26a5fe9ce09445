"""
This module provides a single logger instance used throughout the project.
Configuration is loaded from config.yaml debug section.

Usage:
    from grasp_registration.utils.logger import ProjectLogger

    # In class __init__:
    self.logger = ProjectLogger.get_instance()

    # In methods:
    self.logger.info("Message")
    if self.logger.debug_enabled:
        self.logger.debug("Detailed debug info")

Reference:
- Python logging: https://docs.python.org/3/library/logging.html
- Singleton pattern: https://refactoring.guru/design-patterns/singleton/python
- ANSI escape codes: https://en.wikipedia.org/wiki/ANSI_escape_code
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np


# ANSI color codes for console output
# Using 256-color mode for better terminal compatibility
COLORS = {
    'BLUE': '\033[38;5;39m',
    'GREEN': '\033[38;5;82m',
    'ORANGE': '\033[38;5;208m',
    'RED': '\033[38;5;196m',
    'GRAY': '\033[38;5;245m',
    'BOLD': '\033[1m',
    'DIM': '\033[2m',
    'UNDERLINE': '\033[4m',
    'END': '\033[0m',
}

# Log level mapping
LOG_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
    'ALL': logging.DEBUG,  # ALL = show everything from DEBUG up
}

LOGGER_NAME = 'grasp_registration'


class SelectiveLevelFilter(logging.Filter):
    """
    Filter that only allows specific log levels.

    Used when log_level is a list like ["INFO", "ERROR"].

    Reference: https://docs.python.org/3/library/logging.html#filter-objects
    """

    def __init__(self, allowed_levels: list):
        super().__init__()
        self.allowed_levels = {LOG_LEVELS.get(lvl.upper(), logging.INFO) for lvl in allowed_levels}

    def filter(self, record):
        return record.levelno in self.allowed_levels


class ColoredFormatter(logging.Formatter):
    """
    Adds colors to console output based on log level.

    - DEBUG: Gray (stage internals)
    - INFO: Blue (stage progress, timings)
    - WARNING: Orange (refinement incomplete, skipped points)
    - ERROR: Red bold (global alignment failed)
    """

    LEVEL_COLORS = {
        logging.DEBUG: COLORS['GRAY'] + COLORS['DIM'],
        logging.INFO: COLORS['BLUE'],
        logging.WARNING: COLORS['ORANGE'] + COLORS['BOLD'],
        logging.ERROR: COLORS['RED'] + COLORS['BOLD'],
        logging.CRITICAL: COLORS['RED'] + COLORS['BOLD'] + COLORS['UNDERLINE'],
    }

    LEVEL_PREFIXES = {
        logging.DEBUG: '  ',
        logging.INFO: '▸ ',
        logging.WARNING: '⚠ ',
        logging.ERROR: '✗ ',
        logging.CRITICAL: '✗✗ ',
    }

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno, COLORS['END'])
        prefix = self.LEVEL_PREFIXES.get(record.levelno, '')
        formatted = super().format(record)
        colored_level = f"{color}{record.levelname}{COLORS['END']}"
        formatted = formatted.replace(record.levelname, colored_level, 1)
        return f"{prefix}{formatted}"


class ProjectLogger:
    """
    Singleton logger class for centralized project logging.

    Attributes:
        debug_enabled: Whether DEBUG level logging is active
        log_file_path: Path to current log file (or None)

    Example:
        logger = ProjectLogger.get_instance()
        logger.info("Registration started")
    """

    _instance: Optional['ProjectLogger'] = None
    _initialized: bool = False

    def __new__(cls, config: Optional[Dict] = None):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, config: Optional[Dict] = None):
        """
        Args:
            config: Optional config dict. If None, loads the packaged config.yaml
        """
        if ProjectLogger._initialized:
            return

        if config is None:
            from .config import load_config
            config = load_config()

        self.config = config
        self._setup_from_config()
        ProjectLogger._initialized = True

    def _setup_from_config(self):
        """Setup logger based on config.yaml debug section."""
        debug_config = self.config.get('debug', {}) or {}

        self.debug_enabled = debug_config.get('enabled', True)
        log_to_file = debug_config.get('log_to_file', False)
        log_level_config = debug_config.get('log_level', 'INFO')

        self._logger = logging.getLogger(LOGGER_NAME)
        self._logger.setLevel(logging.DEBUG)  # Capture all, filter in handlers
        self._logger.handlers = []
        self._logger.propagate = False

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColoredFormatter(fmt='%(levelname)-8s %(message)s'))

        # log_level options:
        # 1. "ALL" - show all levels (DEBUG and above)
        # 2. Single string like "INFO" - threshold based
        # 3. List like ["INFO", "ERROR"] - selective filter
        self.selective_filter = None
        if isinstance(log_level_config, list):
            self.log_level = logging.DEBUG
            self.selective_filter = SelectiveLevelFilter(log_level_config)
            console_handler.addFilter(self.selective_filter)
        elif isinstance(log_level_config, str):
            self.log_level = LOG_LEVELS.get(log_level_config.upper(), logging.INFO)
        else:
            self.log_level = logging.INFO
        console_handler.setLevel(self.log_level)
        self._logger.addHandler(console_handler)

        self.log_file_path = None
        if log_to_file:
            self._setup_file_handler()

    def _setup_file_handler(self):
        """Setup file logging with timestamp."""
        output_dir = (self.config.get('output', {}) or {}).get('directory', 'outputs')
        log_dir = Path(output_dir) / 'registration_logs'
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._logger.warning(f"Could not create log directory {log_dir}: {e}")
            return

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        self.log_file_path = log_dir / f'registration_{timestamp}.log'

        file_handler = logging.FileHandler(self.log_file_path, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            fmt='%(asctime)s | %(levelname)-8s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        self._logger.addHandler(file_handler)

    @classmethod
    def get_instance(cls, config: Optional[Dict] = None) -> 'ProjectLogger':
        """
        Get the singleton logger instance.

        Args:
            config: Optional config dict (only used on first call)
        """
        if cls._instance is None:
            cls._instance = cls(config)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset singleton (for testing purposes only)."""
        if cls._instance is not None:
            cls._instance.cleanup()
        cls._instance = None
        cls._initialized = False

    def cleanup(self):
        """Close and detach all handlers."""
        if hasattr(self, '_logger'):
            for handler in self._logger.handlers[:]:
                handler.close()
                self._logger.removeHandler(handler)

    # =========================================================================
    # LOGGING METHODS (delegate to internal logger)
    # =========================================================================

    def debug(self, msg: str, *args, **kwargs):
        """Log debug message (only if debug_enabled)."""
        if self.debug_enabled:
            self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._logger.critical(msg, *args, **kwargs)

    # =========================================================================
    # STRUCTURED LOGGING HELPERS
    # =========================================================================

    def log_stage_start(self, stage: str, details: Optional[Dict[str, Any]] = None):
        """
        Log a pipeline stage transition.

        Args:
            stage: Stage name ("downsampling", "global_alignment", ...)
            details: Optional key/value context printed below the header
        """
        self.info(f"STAGE: {stage.upper()}")
        if details:
            for key, value in details.items():
                if isinstance(value, np.ndarray):
                    self.debug(f"    {key}: [{', '.join(f'{v:.4f}' for v in value.ravel())}]")
                else:
                    self.debug(f"    {key}: {value}")

    def log_stage_timing(self, stage: str, seconds: float):
        self.info(f"  {stage} took {seconds * 1000.0:.1f} ms")

    def log_transform(self, label: str, matrix: np.ndarray):
        """Print a 4x4 transform as rotation block and translation vector."""
        self.info(f"{label}:")
        self.info("  Rotation matrix :")
        self.info("      | %6.3f %6.3f %6.3f |" % tuple(matrix[0, :3]))
        self.info("  R = | %6.3f %6.3f %6.3f |" % tuple(matrix[1, :3]))
        self.info("      | %6.3f %6.3f %6.3f |" % tuple(matrix[2, :3]))
        self.info("  Translation vector :")
        self.info("  t = < %6.3f, %6.3f, %6.3f >" % tuple(matrix[:3, 3]))

    def log_registration_result(self, result):
        """
        Log the end-of-run summary.

        Args:
            result: AlignmentResult of the run
        """
        self.info("=" * 60)
        if result.failed:
            self.error("REGISTRATION FAILED: global alignment did not converge")
            self.error(f"  Best inlier fraction: {result.inlier_fraction:.3f} "
                       f"after {result.ransac_iterations} iterations")
        else:
            self.info(f"REGISTRATION {result.status.name}")
            self.info(f"  Inlier fraction: {result.inlier_fraction:.3f}")
            self.info(f"  Fitness (MSE): {result.fitness:.3e}")
            self.info(f"  ICP iterations: {result.icp_iterations}")
            self.log_transform("Final transformation", result.transformation)
        if result.timings:
            total = sum(result.timings.values())
            self.info(f"  Total time: {total:.3f} s")
        if self.log_file_path:
            self.info(f"  Full Log: {self.log_file_path}")
        self.info("=" * 60)


@contextmanager
def stage_timer(stage: str, timings: Optional[Dict[str, float]] = None,
                logger: Optional[ProjectLogger] = None):
    """
    Measure wall time of a pipeline stage.

    Args:
        stage: Key under which the duration is stored
        timings: Dict receiving {stage: seconds}
        logger: Logger for the timing line (project logger if None)
    """
    logger = logger or ProjectLogger.get_instance()
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if timings is not None:
            timings[stage] = elapsed
        logger.log_stage_timing(stage, elapsed)
