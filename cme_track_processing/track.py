#!/usr/bin/env python3
"""
Track records produced by the processing pipeline

A Track is one reconstructed trajectory. Its segments are concatenated into
flat per-frame arrays with a one-slot separator (seam) between consecutive
segments. Seams and gaps are both NaN in the measurement arrays; they are told
apart by two explicit masks:

- seam_mask: structural separator between segments, never a gap
- gap_vect:  frame slot without a detection in the master channel

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

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional

import numpy as np


# Per-detection fields re-estimated for gaps and buffers
ESTIMATE_FIELDS = ('x', 'y', 'A', 'c', 'A_pstd', 'c_pstd',
                   'sigma_r', 'SE_sigma_r', 'pval_Ar', 'hval_AD')

# Fields every detection record must provide
REQUIRED_FIELDS = ('x', 'y', 'A', 'c')

# Detection bookkeeping fields that are not copied into tracks
EXCLUDED_FIELDS = ('s', 'x_init', 'y_init', 'xCoord', 'yCoord', 'amp', 'dRange')


class Visibility(IntEnum):
    COMPLETE = 1  # track and both buffers lie inside the movie
    INCOMPLETE = 2  # cut at the beginning or the end of the movie
    PERSISTENT = 3  # present during the whole movie


class GapStatus(IntEnum):
    VALID = 4
    INVALID = 5


@dataclass
class BufferReadout:
    """Signal re-estimated in the frames before or after a track"""
    f: np.ndarray  # movie frames
    t: np.ndarray  # time in seconds
    values: Dict[str, np.ndarray]  # field -> (nCh, nFrames)

    @classmethod
    def empty(cls, n_channels: int, n_frames: int) -> 'BufferReadout':
        return cls(
            f=np.full(n_frames, np.nan),
            t=np.full(n_frames, np.nan),
            values={name: np.full((n_channels, n_frames), np.nan) for name in ESTIMATE_FIELDS},
        )

    def __len__(self):
        return self.f.shape[0]

    def __getattr__(self, name):
        values = self.__dict__.get('values')
        if values is not None and name in values:
            return values[name]
        raise AttributeError(name)


@dataclass
class MotionAnalysis:
    total_displacement: float
    msd: np.ndarray  # mean squared displacement for lags 1..10
    msd_std: np.ndarray


@dataclass
class Track:
    """
    One reconstructed trajectory

    Per-frame measurements live in `fields` (name -> (nCh, L) array) and are
    also reachable as attributes, e.g. ``track.x`` or ``track.A_pstd``.
    """
    n_seg: int
    start: int
    end: int
    lifetime_s: float
    visibility: Visibility
    t: np.ndarray
    f: np.ndarray
    fields: Dict[str, np.ndarray]
    seam_mask: np.ndarray
    seq_of_events: Optional[np.ndarray] = None
    feat_indx: Optional[np.ndarray] = None
    gap_vect: Optional[np.ndarray] = None
    gap_status: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    gap_idx: List[np.ndarray] = field(default_factory=list)
    start_buffer: Optional[BufferReadout] = None
    end_buffer: Optional[BufferReadout] = None
    cat_idx: Optional[int] = None
    is_ccp: Optional[bool] = None
    motion_analysis: Optional[MotionAnalysis] = None

    def __getattr__(self, name):
        fields_ = self.__dict__.get('fields')
        if fields_ is not None and name in fields_:
            return fields_[name]
        raise AttributeError(name)

    def __len__(self):
        return self.t.shape[0]

    @property
    def n_channels(self) -> int:
        return self.fields['x'].shape[0]

    @property
    def length(self) -> int:
        """Number of movie frames between start and end, inclusive"""
        return self.end - self.start + 1

    @property
    def n_gaps(self) -> int:
        return int(np.sum(self.gap_vect)) if self.gap_vect is not None else 0

    @property
    def all_gaps_valid(self) -> bool:
        return bool(np.all(self.gap_status == GapStatus.VALID))

    def gap_positions(self, valid_only: bool = False) -> np.ndarray:
        """Array slots of the classified gaps, in order"""
        selected = [idx for idx, status in zip(self.gap_idx, self.gap_status)
                    if not valid_only or status == GapStatus.VALID]
        if not selected:
            return np.zeros(0, dtype=int)
        return np.concatenate(selected).astype(int)

    def check_shapes(self) -> None:
        """Raise ValueError if the per-frame arrays disagree in length"""
        n = self.t.shape[0]
        if self.f.shape[0] != n or self.seam_mask.shape[0] != n:
            raise ValueError("t, f and seam_mask differ in length")
        for name, values in self.fields.items():
            if values.shape[1] != n:
                raise ValueError(f"Field {name} has {values.shape[1]} slots, expected {n}")
        if self.gap_vect is not None and self.gap_vect.shape[0] != n:
            raise ValueError("gap_vect differs in length")
