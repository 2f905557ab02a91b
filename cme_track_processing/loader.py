#!/usr/bin/env python3
"""
Input adapters: tracker output, detection results and movie frames

- load_tracker_output: compound tracks from the tracker (.mat or .pkl)
- load_detection: per-frame localization tables from the detector (.mat or .pkl)
- FileFrameSource / ArrayFrameSource: raw frames and cell masks by frame number

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

import os
import pickle
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.io
import tifffile
from skimage import io as skio
from skimage.measure import label

from .config import MovieData
from .module_logger import get_module_logger, PerformanceTimer
from .segment_graph import CompoundTrack, TopologyError
from .track import REQUIRED_FIELDS, EXCLUDED_FIELDS

logger = get_module_logger('loader')


@dataclass(frozen=True)
class DetectionFrame:
    """
    Localization results of one movie frame

    Attributes:
        values: field name -> (nCh, nDet) array, e.g. x, y, A, c, A_pstd, hval_AD
        sigma: per-channel PSF standard deviation (pixels)
    """
    values: Dict[str, np.ndarray]
    sigma: np.ndarray = field(default_factory=lambda: np.array([np.nan]))

    def __post_init__(self):
        missing = [name for name in REQUIRED_FIELDS if name not in self.values]
        if missing:
            raise ValueError(f"Detection frame lacks fields {missing}")

    @property
    def n_detections(self) -> int:
        return self.values['x'].shape[1]

    @property
    def n_channels(self) -> int:
        return self.values['x'].shape[0]

    def track_field_names(self) -> List[str]:
        """Fields copied into tracks: per-detection arrays shaped like x"""
        shape = self.values['x'].shape
        return [name for name, values in self.values.items()
                if name not in EXCLUDED_FIELDS and values.shape == shape]

    def get(self, name: str, detection: int) -> np.ndarray:
        """Values of one field for a 1-based detection index, one per channel"""
        return self.values[name][:, detection - 1]

    @classmethod
    def from_record(cls, record) -> 'DetectionFrame':
        """Build from a dict or a MATLAB struct (scipy.io mat_struct)"""
        if isinstance(record, dict):
            items = record.items()
        else:
            items = ((name, getattr(record, name)) for name in record._fieldnames)

        values = {}
        sigma = np.array([np.nan])
        for name, value in items:
            if name == 's':
                sigma = np.atleast_1d(np.asarray(value, dtype=float)).ravel()
                continue
            array = np.asarray(value)
            numeric = np.issubdtype(array.dtype, np.number) or array.dtype == bool
            if not numeric:
                continue
            values[name] = np.atleast_2d(array.astype(float))
        # frames without detections: make sure the required fields exist
        n_ch = max((v.shape[0] for v in values.values() if v.size), default=sigma.size)
        for name in REQUIRED_FIELDS:
            if name not in values or values[name].size == 0:
                values[name] = np.zeros((n_ch, 0))
        for name, value in values.items():
            if value.size == 0:
                values[name] = np.zeros((n_ch, 0))
        return cls(values=values, sigma=sigma)


# ----------------------------------------------------------------------
# File readers
# ----------------------------------------------------------------------

def _load_mat_struct_array(filepath: Union[str, Path], variable: str) -> List:
    mat_data = scipy.io.loadmat(str(filepath), squeeze_me=False, struct_as_record=False)
    if variable not in mat_data:
        raise KeyError(f"{filepath} does not contain '{variable}'")
    return list(np.asarray(mat_data[variable]).ravel())


def _load_pickle(filepath: Union[str, Path]):
    with open(filepath, 'rb') as f:
        return pickle.load(f)


def load_tracker_output(filepath: Union[str, Path]) -> List[CompoundTrack]:
    """
    Load compound tracks from the tracker output file.

    Records that violate the segment-graph invariants are logged and dropped.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Tracker output not found: {filepath}")

    with PerformanceTimer(logger, f"Loading tracker output {filepath.name}"):
        ext = filepath.suffix.lower()
        if ext == '.mat':
            records = _load_mat_struct_array(filepath, 'tracksFinal')
        elif ext == '.pkl':
            data = _load_pickle(filepath)
            records = data.get('tracks_final', data) if isinstance(data, dict) else data
        else:
            raise ValueError(f"Unsupported tracker output format: {ext}")

        tracks = []
        for i, record in enumerate(records):
            try:
                track = CompoundTrack.from_tracker_record(record)
                track.validate()
            except (KeyError, TopologyError, ValueError) as e:
                logger.warning(f"Discarding tracker record {i}: {e}")
                continue
            tracks.append(track)

    logger.info(f"Loaded {len(tracks)}/{len(records)} compound tracks from {filepath}")
    return tracks


def load_detection(filepath: Union[str, Path]) -> List[DetectionFrame]:
    """Load the per-frame detection tables (frameInfo)"""
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Detection results not found: {filepath}")

    with PerformanceTimer(logger, f"Loading detection {filepath.name}"):
        ext = filepath.suffix.lower()
        if ext == '.mat':
            records = _load_mat_struct_array(filepath, 'frameInfo')
        elif ext == '.pkl':
            data = _load_pickle(filepath)
            records = data.get('frame_info', data) if isinstance(data, dict) else data
        else:
            raise ValueError(f"Unsupported detection format: {ext}")
        frames = [DetectionFrame.from_record(r) for r in records]

    logger.info(f"Loaded detection results for {len(frames)} frames from {filepath}")
    return frames


def find_input_file(directory: Path, filename: str) -> Optional[Path]:
    """Locate an input file, accepting a .pkl in place of a .mat and vice versa"""
    candidate = Path(directory) / filename
    if candidate.exists():
        return candidate
    stem = candidate.with_suffix('')
    for ext in ('.mat', '.pkl'):
        alternative = stem.with_suffix(ext)
        if alternative.exists():
            return alternative
    return None


# ----------------------------------------------------------------------
# Frame sources
# ----------------------------------------------------------------------

class FrameSource:
    """
    Raw frames and foreground masks of one movie, addressed by 1-based frame

    Subclasses implement _read_frame/_read_mask; results are cached so that gap
    and buffer estimation share one read per frame and channel.
    """

    def __init__(self, cache_size: int = 8):
        self.cache_size = cache_size
        self._cache: 'OrderedDict[Tuple, np.ndarray]' = OrderedDict()

    def _cached(self, key: Tuple, reader) -> np.ndarray:
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]
        value = reader()
        self._cache[key] = value
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return value

    def read_frame(self, channel: int, frame: int) -> np.ndarray:
        return self._cached(('frame', channel, frame),
                            lambda: np.asarray(self._read_frame(channel, frame), dtype=float))

    def read_mask(self, frame: int) -> Optional[np.ndarray]:
        return self._cached(('mask', frame), lambda: self._read_mask(frame))

    def read_labels(self, frame: int) -> np.ndarray:
        """Connected components (8-connectivity) of the foreground mask"""
        def labels():
            mask = self.read_mask(frame)
            if mask is None:
                frame0 = self.read_frame(0, frame)
                return np.zeros(frame0.shape, dtype=int)
            return label(np.asarray(mask) != 0, connectivity=2)
        return self._cached(('labels', frame), labels)

    def _read_frame(self, channel: int, frame: int) -> np.ndarray:
        raise NotImplementedError

    def _read_mask(self, frame: int) -> Optional[np.ndarray]:
        raise NotImplementedError


class ArrayFrameSource(FrameSource):
    """Frames held in memory: stack of shape (nCh, nFrames, ny, nx)"""

    def __init__(self, frames: np.ndarray, masks: Optional[np.ndarray] = None, cache_size: int = 8):
        super().__init__(cache_size)
        frames = np.asarray(frames)
        if frames.ndim == 3:
            frames = frames[np.newaxis]
        self.frames = frames
        self.masks = masks

    def _read_frame(self, channel: int, frame: int) -> np.ndarray:
        return self.frames[channel, frame - 1]

    def _read_mask(self, frame: int) -> Optional[np.ndarray]:
        if self.masks is None:
            return None
        return np.asarray(self.masks[frame - 1])


class FileFrameSource(FrameSource):
    """
    Frames read from disk

    Each channel's frame_paths entry is either a list of per-frame image
    files or the path of one multi-page TIFF; mask_paths follows the same
    convention.
    """

    def __init__(self, movie: MovieData, cache_size: int = 8):
        super().__init__(cache_size)
        self.movie = movie

    @staticmethod
    def _read(paths: Union[str, Sequence[str]], frame: int) -> np.ndarray:
        if isinstance(paths, (str, os.PathLike)):
            return tifffile.imread(paths, key=frame - 1)
        return skio.imread(paths[frame - 1])

    def _read_frame(self, channel: int, frame: int) -> np.ndarray:
        return self._read(self.movie.frame_paths[channel], frame)

    def _read_mask(self, frame: int) -> Optional[np.ndarray]:
        if self.movie.mask_paths is None:
            return None
        return self._read(self.movie.mask_paths, frame)
