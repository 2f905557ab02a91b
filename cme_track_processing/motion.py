#!/usr/bin/env python3
"""
Displacement statistics of tracks

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

from typing import List

import numpy as np
from tqdm import tqdm

from .module_logger import get_module_logger, PerformanceTimer
from .track import MotionAnalysis, Track
from .utils import sample_std

logger = get_module_logger('motion')

MAX_LAG = 10

# categories 1-4: single tracks
MAX_CATEGORY = 5


def mean_squared_displacement(x: np.ndarray, y: np.ndarray, max_lag: int = MAX_LAG):
    """
    MSD and its standard deviation for lags 1..max_lag.

    Lags the track is too short for are NaN. Missing samples are ignored.
    """
    msd = np.full(max_lag, np.nan)
    msd_std = np.full(max_lag, np.nan)
    for lag in range(1, min(max_lag, len(x) - 1) + 1):
        sq = (x[lag:] - x[:-lag]) ** 2 + (y[lag:] - y[:-lag]) ** 2
        if np.any(np.isfinite(sq)):
            msd[lag - 1] = np.nanmean(sq)
            msd_std[lag - 1] = sample_std(sq)
    return msd, msd_std


def analyze_track(track: Track, master: int) -> MotionAnalysis:
    x, y = track.x[master], track.y[master]
    msd, msd_std = mean_squared_displacement(x, y)
    return MotionAnalysis(
        total_displacement=float(np.sqrt((x[-1] - x[0]) ** 2 + (y[-1] - y[0]) ** 2)),
        msd=msd,
        msd_std=msd_std,
    )


def compute_motion_statistics(tracks: List[Track], master: int, verbose: bool = False) -> List[Track]:
    """Attach MotionAnalysis to single tracks (categories 1-4)"""
    selected = [t for t in tracks if t.cat_idx is not None and t.cat_idx < MAX_CATEGORY]
    with PerformanceTimer(logger, "Motion statistics"):
        for track in tqdm(selected, desc="Motion statistics", unit=" tracks", disable=not verbose):
            track.motion_analysis = analyze_track(track, master)
    logger.info(f"Motion statistics for {len(selected)}/{len(tracks)} tracks")
    return tracks
