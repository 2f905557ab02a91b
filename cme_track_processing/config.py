#!/usr/bin/env python3
"""
Configuration management for track processing

This module holds the processing options that are frozen before any movie is
processed, the description of one movie (paths, frame rate, channels) and the
YAML loading/saving of both. Parameters are validated before the batch starts.

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
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence, Tuple, Union

import numpy as np
import yaml
from scipy.stats import norm

from .module_logger import get_module_logger

logger = get_module_logger('config')


class ConfigurationError(ValueError):
    """Raised when processing options or movie descriptions are invalid"""


@dataclass
class LoggingConfig:
    """Configuration parameters for logging."""

    log_directory: Optional[str] = None  # None: package 'logs' folder or $CME_TRACK_LOG_DIR
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    console_output: bool = False  # warnings and errors also go to stdout

    def level_number(self) -> int:
        level = logging.getLevelName(self.level.upper())
        if not isinstance(level, int):
            raise ConfigurationError(f"Unknown log level: {self.level}")
        return level


@dataclass
class ProcessingConfig:
    """Options of the track-processing pipeline."""

    # Buffer readout before/after each track, in frames (inf: up to the movie edge)
    buffer: Tuple[float, float] = (5, 5)
    buffer_all: bool = False  # also buffer incomplete tracks

    # Input/output file names, relative to <source>/Tracking and <source>/Detection
    tracker_output: str = "trackedFeatures.mat"
    detection_file: str = "detection_v2.mat"
    file_name: str = "ProcessedTracks.pkl"
    overwrite: bool = False

    # Frame indices used by the tracker, one list per movie (None: all frames)
    frames: Optional[List[List[int]]] = None

    # Stages
    preprocess: bool = True  # discard single-frame tracks, fuse overlapping segments
    postprocess: bool = True  # category assignment and track validation

    # Post-processing
    cohort_bounds_s: List[float] = field(default_factory=lambda: [10, 20, 40, 60, 80, 100, 125, 150])
    cutoff_f: int = 5  # minimum lifetime (frames) for slave-channel reporting
    force_diffraction_limited: bool = False
    slave_amplitude_ratio: float = 0.0
    alpha: float = 0.05

    # Batch
    n_jobs: int = 1

    def __post_init__(self):
        self.buffer = tuple(float(b) for b in np.atleast_1d(self.buffer).ravel())
        self.cohort_bounds_s = [float(b) for b in self.cohort_bounds_s]

    @property
    def k_level(self) -> float:
        """Background threshold in standard deviations (two-sided alpha)"""
        return float(norm.ppf(1 - self.alpha / 2.0))

    def validate(self) -> None:
        """Raise ConfigurationError on invalid options"""
        if len(self.buffer) != 2:
            raise ConfigurationError(f"buffer must have two entries, got {self.buffer}")
        if any(np.isnan(b) or b < 0 for b in self.buffer):
            raise ConfigurationError(f"buffer lengths must be non-negative, got {self.buffer}")
        if any(not np.isinf(b) and b != int(b) for b in self.buffer):
            raise ConfigurationError(f"buffer lengths must be whole frames, got {self.buffer}")

        if np.any(np.diff(self.cohort_bounds_s) <= 0):
            raise ConfigurationError(f"cohort_bounds_s must be increasing, got {self.cohort_bounds_s}")

        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"alpha must be in (0, 1), got {self.alpha}")

        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs cannot be 0. Use -1 (all cores) or a positive integer.")

        if self.frames is not None:
            for i, frame_list in enumerate(self.frames):
                steps = np.unique(np.diff(np.asarray(frame_list)))
                if len(frame_list) == 0 or steps.size > 1 or (steps.size == 1 and steps[0] <= 0):
                    raise ConfigurationError(
                        f"Frame list of movie {i} is not sampled at a constant rate")

    def frames_for(self, movie_index: int, movie_length: int) -> np.ndarray:
        """Movie frame numbers (1-based) analyzed by the tracker for one movie"""
        if self.frames is None:
            return np.arange(1, movie_length + 1)
        return np.asarray(self.frames[movie_index], dtype=int)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['buffer'] = list(self.buffer)
        return data


@dataclass
class MovieData:
    """Description of one movie and where its inputs live."""

    source: str  # movie root, also the path of the master channel
    channels: List[str] = field(default_factory=list)
    framerate: float = 1.0  # seconds per frame
    movie_length: int = 0
    image_size: Tuple[int, int] = (0, 0)  # (ny, nx)
    frame_paths: List[Union[str, List[str]]] = field(default_factory=list)
    mask_paths: Union[str, List[str], None] = None

    def __post_init__(self):
        if not self.channels:
            self.channels = [self.source]
        self.image_size = tuple(int(v) for v in self.image_size)

    @property
    def n_channels(self) -> int:
        return len(self.channels)

    @property
    def master_channel(self) -> int:
        """Index of the channel whose path equals the movie source"""
        for i, channel in enumerate(self.channels):
            if os.path.normpath(channel) == os.path.normpath(self.source):
                return i
        logger.warning(f"No channel matches source {self.source}; using channel 0 as master")
        return 0

    @property
    def duration_s(self) -> float:
        return self.movie_length * self.framerate

    @property
    def tracking_dir(self) -> Path:
        return Path(self.source) / "Tracking"

    @property
    def detection_dir(self) -> Path:
        return Path(self.source) / "Detection"

    @property
    def short_path(self) -> str:
        parts = Path(self.source).parts
        return os.path.join(*parts[-2:]) if len(parts) >= 2 else str(self.source)

    def validate(self) -> None:
        if self.framerate <= 0:
            raise ConfigurationError(f"{self.source}: framerate must be positive")
        if self.movie_length < 1:
            raise ConfigurationError(f"{self.source}: movie_length must be at least 1")
        if len(self.image_size) != 2 or min(self.image_size) < 1:
            raise ConfigurationError(f"{self.source}: image_size must be (ny, nx)")


def _update_dataclass(config_obj: Any, config_dict: Dict[str, Any]) -> None:
    """Update a dataclass instance with dictionary values."""
    known = {f.name for f in fields(config_obj)}
    for key, value in config_dict.items():
        if key in known:
            setattr(config_obj, key, value)
        else:
            logger.warning(f"Unknown configuration parameter: {key}")


def load_config(config_file: Union[str, Path]) -> Tuple[ProcessingConfig, LoggingConfig]:
    """
    Load processing and logging configuration from a YAML file.

    The file has the optional sections 'processing' and 'logging'.
    """
    config_path = Path(config_file)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    with open(config_path, 'r') as f:
        config_data = yaml.safe_load(f) or {}

    processing = ProcessingConfig()
    logging_config = LoggingConfig()
    if 'processing' in config_data:
        _update_dataclass(processing, config_data['processing'])
        processing.__post_init__()
    if 'logging' in config_data:
        _update_dataclass(logging_config, config_data['logging'])

    logger.info(f"Configuration loaded from {config_file}")
    return processing, logging_config


def save_config(config_file: Union[str, Path], processing: ProcessingConfig,
                logging_config: Optional[LoggingConfig] = None) -> None:
    """Save configuration to a YAML file."""
    config_data = {'processing': processing.to_dict()}
    if logging_config is not None:
        config_data['logging'] = asdict(logging_config)

    config_path = Path(config_file)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        yaml.safe_dump(config_data, f, default_flow_style=False, indent=2)

    logger.info(f"Configuration saved to {config_file}")


def load_movie_list(movie_file: Union[str, Path]) -> List[MovieData]:
    """
    Load movie descriptions from a YAML file.

    The file holds a list under 'movies'; each entry has the fields of MovieData.
    """
    movie_path = Path(movie_file)
    if not movie_path.exists():
        raise FileNotFoundError(f"Movie list not found: {movie_file}")

    with open(movie_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    entries: Sequence[Dict[str, Any]] = data.get('movies', []) if isinstance(data, dict) else data
    movies = []
    for entry in entries:
        try:
            movies.append(MovieData(**entry))
        except TypeError as e:
            raise ConfigurationError(f"Invalid movie entry {entry}: {e}") from e

    logger.info(f"Loaded {len(movies)} movie(s) from {movie_file}")
    return movies
