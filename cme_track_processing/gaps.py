#!/usr/bin/env python3
"""
Gap detection, validity classification and linear interpolation

A gap is a run of frame slots without a master-channel detection that lies
between two runs of detections of the same segment. Seams between
concatenated segments are never gaps.

A gap is valid when both flanking detection runs are longer than one frame,
or when the gap itself lasts a single frame; valid gaps are filled by linear
interpolation of position, amplitude and background in every channel.

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

from typing import List, Tuple

import numpy as np

from .module_logger import get_module_logger, PerformanceTimer
from .track import GapStatus, Track
from .utils import run_bounds

logger = get_module_logger('gaps')

INTERPOLATED_FIELDS = ('x', 'y', 'A', 'c')


def gap_status(prev_run: int, gap_length: int, next_run: int) -> GapStatus:
    """Validity of one gap from its length and the lengths of its flanking runs"""
    if (prev_run > 1 and next_run > 1) or gap_length == 1:
        return GapStatus.VALID
    return GapStatus.INVALID


def find_gaps(gap_vect: np.ndarray, seam_mask: np.ndarray) -> Tuple[List[np.ndarray], np.ndarray]:
    """
    Locate and classify the gaps of one track.

    Missing slots and seams together split the track into detection runs.
    Every interior run of missing slots is a candidate gap; candidates that
    contain a seam are structural and dropped.

    Returns:
        gap_idx: array slots of each gap
        status: GapStatus of each gap
    """
    missing = gap_vect | seam_mask
    starts, ends, values = run_bounds(missing)

    gap_idx = []
    status = []
    for i in range(1, len(values) - 1):
        if not values[i]:
            continue
        slots = np.arange(starts[i], ends[i] + 1)
        if seam_mask[slots].any():
            continue
        prev_run = ends[i - 1] - starts[i - 1] + 1
        next_run = ends[i + 1] - starts[i + 1] + 1
        gap_idx.append(slots)
        status.append(gap_status(prev_run, slots.size, next_run))
    return gap_idx, np.array(status, dtype=int)


def classify_track_gaps(track: Track, master: int) -> Track:
    """Set gap_vect, gap_idx and gap_status of one track"""
    track.gap_vect = np.isnan(track.x[master]) & ~track.seam_mask
    track.gap_idx, track.gap_status = find_gaps(track.gap_vect, track.seam_mask)
    return track


def interpolate_gap(values: np.ndarray, slots: np.ndarray) -> None:
    """Fill slots of a (nCh, L) array on the line between the flanking samples (in place)"""
    lo, hi = slots[0] - 1, slots[-1] + 1
    weight = (slots - lo) / (hi - lo)
    values[:, slots] = values[:, [lo]] + weight * (values[:, [hi]] - values[:, [lo]])


def interpolate_track_gaps(track: Track) -> Track:
    """Linearly interpolate position, amplitude and background in valid gaps"""
    for slots, status in zip(track.gap_idx, track.gap_status):
        if status != GapStatus.VALID:
            continue
        for name in INTERPOLATED_FIELDS:
            interpolate_gap(track.fields[name], slots)
    return track


def process_gaps(tracks: List[Track], master: int) -> List[Track]:
    """Classify and interpolate the gaps of all tracks"""
    with PerformanceTimer(logger, "Gap classification and interpolation"):
        n_valid = n_invalid = 0
        for track in tracks:
            classify_track_gaps(track, master)
            interpolate_track_gaps(track)
            n_valid += int(np.sum(track.gap_status == GapStatus.VALID))
            n_invalid += int(np.sum(track.gap_status == GapStatus.INVALID))
    logger.info(f"Gaps: {n_valid} valid, {n_invalid} invalid in {len(tracks)} tracks")
    return tracks
