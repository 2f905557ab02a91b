#!/usr/bin/env python3
"""
Centralized Logging System for track processing modules

Every module of the track-processing pipeline gets its own named logger with
a dedicated log file, millisecond timestamps and optional console output for
warnings. Loggers are created lazily on first use.

Copyright (C) 2025, Danuser Lab - UTSouthwestern

This file is part of cme_track_processing.

cme_track_processing is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

cme_track_processing is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with cme_track_processing.  If not, see <http://www.gnu.org/licenses/>.
"""

import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import datetime

import numpy as np


LOGGER_PREFIX = "cme_track_processing"
LOG_DIR_ENV = "CME_TRACK_LOG_DIR"


class MillisecondFormatter(logging.Formatter):
    """Formatter that appends milliseconds to the timestamp"""

    def formatTime(self, record, datefmt=None):
        ct = self.converter(record.created)
        if datefmt:
            s = time.strftime(datefmt, ct)
        else:
            s = time.strftime('%H:%M:%S', ct)
        s += '.%03d' % (record.msecs)
        return s


class TrackLogger:
    """
    Registry of per-module loggers for the track-processing pipeline

    Features:
    - Individual log files for each module, one set per session
    - Configurable log levels
    - Console output of warnings and errors on request
    """

    _loggers: Dict[str, logging.Logger] = {}
    _log_directory: Optional[Path] = None
    _global_log_level = logging.INFO
    _console_output = False
    _session_id = None

    @classmethod
    def setup_logging_directory(cls, log_dir: Optional[str] = None) -> Path:
        """Set up the logging directory; existing loggers keep their files"""
        if log_dir is None:
            log_dir = os.environ.get(LOG_DIR_ENV)
        if log_dir is None:
            log_dir = Path(__file__).parent / "logs"
        else:
            log_dir = Path(log_dir)

        log_dir.mkdir(parents=True, exist_ok=True)
        cls._log_directory = log_dir

        if cls._session_id is None:
            cls._session_id = datetime.now().strftime("%Y%m%d_%H%M%S")

        return log_dir

    @classmethod
    def get_logger(cls, module_name: str,
                   log_level: Optional[int] = None,
                   console_output: Optional[bool] = None) -> logging.Logger:
        """
        Get the logger of one module

        Args:
            module_name: Name of the module (e.g., 'topology', 'classification')
            log_level: Optional log level override
            console_output: Optional console output override

        Returns:
            Configured logger instance
        """
        if cls._log_directory is None:
            cls.setup_logging_directory()

        if log_level is None:
            log_level = cls._global_log_level
        if console_output is None:
            console_output = cls._console_output

        if module_name in cls._loggers:
            logger = cls._loggers[module_name]
            logger.setLevel(log_level)
            return logger

        logger = logging.getLogger(f"{LOGGER_PREFIX}.{module_name}")
        logger.setLevel(log_level)
        logger.handlers.clear()

        log_filepath = cls._log_directory / f"tracks_{module_name}_{cls._session_id}.log"
        file_handler = logging.FileHandler(log_filepath, mode='a', encoding='utf-8')
        file_handler.setFormatter(MillisecondFormatter(
            '%(asctime)s | %(levelname)8s | %(funcName)20s | %(message)s'
        ))
        logger.addHandler(file_handler)

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(logging.WARNING)
            console_handler.setFormatter(logging.Formatter('%(levelname)s [%(name)s]: %(message)s'))
            logger.addHandler(console_handler)

        logger.propagate = False
        cls._loggers[module_name] = logger

        logger.debug(f"Log file: {log_filepath}")
        return logger

    @classmethod
    def configure(cls, log_dir: Optional[str] = None, level: Optional[int] = None,
                  console_output: Optional[bool] = None):
        """Apply a logging configuration to future and existing loggers"""
        names = list(cls._loggers)
        if log_dir is not None or console_output is not None:
            # handlers are rebuilt below; module-level references stay valid
            # because logging.getLogger returns the same object per name
            for name in names:
                logger = cls._loggers.pop(name)
                for handler in list(logger.handlers):
                    handler.close()
                    logger.removeHandler(handler)
        if log_dir is not None:
            cls.setup_logging_directory(log_dir)
        if level is not None:
            cls._global_log_level = level
        if console_output is not None:
            cls._console_output = console_output
        for name in names:
            cls.get_logger(name)

    @classmethod
    def get_log_directory(cls) -> Path:
        if cls._log_directory is None:
            cls.setup_logging_directory()
        return cls._log_directory


class PerformanceTimer:
    """
    Times a block of work and logs its duration
    """

    def __init__(self, logger: logging.Logger, operation_name: str):
        self.logger = logger
        self.operation_name = operation_name
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.time()
        self.logger.debug(f"TIMING: Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.time() - self.start_time
        if exc_type is None:
            self.logger.info(f"TIMING: {self.operation_name} completed in {self.duration:.4f} seconds")
        else:
            self.logger.error(f"TIMING: {self.operation_name} failed after {self.duration:.4f} seconds")


class LoggingMixin:
    """
    Mixin class adding a module logger to any class
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        module_name = self.__class__.__module__.split('.')[-1]
        if module_name == '__main__':
            module_name = self.__class__.__name__.lower()
        self.logger = TrackLogger.get_logger(module_name)

    def log_parameters(self, params: Dict[str, Any], context: str = ""):
        """Log parameters in a structured way"""
        context_str = f" ({context})" if context else ""
        self.logger.info(f"PARAMETERS{context_str}:")
        for key, value in params.items():
            self.logger.info(f"  {key}: {value}")

    def time_operation(self, operation_name: str) -> PerformanceTimer:
        return PerformanceTimer(self.logger, operation_name)


def get_module_logger(module_name: str,
                      log_level: Optional[int] = None,
                      console_output: Optional[bool] = None) -> logging.Logger:
    """Convenience wrapper around TrackLogger.get_logger"""
    return TrackLogger.get_logger(module_name, log_level, console_output)


def log_array_info(logger: logging.Logger, array_name: str, array, context: str = ""):
    """Log a one-line summary of an array at debug level"""
    if not logger.isEnabledFor(logging.DEBUG):
        return

    context_str = f" ({context})" if context else ""

    if array is None:
        logger.debug(f"ARRAY{context_str}: {array_name} = None")
    elif isinstance(array, np.ndarray):
        if array.size and np.issubdtype(array.dtype, np.number) and np.any(np.isfinite(array)):
            logger.debug(f"ARRAY{context_str}: {array_name} shape={array.shape}, dtype={array.dtype}, "
                         f"min={np.nanmin(array):.3f}, max={np.nanmax(array):.3f}, "
                         f"nan={int(np.sum(np.isnan(array)))}")
        else:
            logger.debug(f"ARRAY{context_str}: {array_name} shape={array.shape}, dtype={array.dtype}")
    elif isinstance(array, (list, tuple)):
        logger.debug(f"ARRAY{context_str}: {array_name} = {type(array).__name__} with {len(array)} elements")
    else:
        logger.debug(f"ARRAY{context_str}: {array_name} = {str(array)[:100]}")
