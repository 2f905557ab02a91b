#!/usr/bin/env python3
"""
Conversion of compound tracks into flattened Track records

Each retained segment contributes the frames [segment start, segment end]
(one frame less when the segment ends by merging). Segments are concatenated
in segment order with a one-slot seam in between; per-detection fields are
copied from the detection tables, gaps stay NaN.

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

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .loader import DetectionFrame
from .module_logger import get_module_logger, PerformanceTimer
from .segment_graph import CompoundTrack, EventType
from .track import BufferReadout, Track, Visibility
from .utils import matlab_round

logger = get_module_logger('flatten')

# shorter merging/splitting branches are candidates for removal
MIN_BRANCH_LENGTH = 4


@dataclass
class FlattenParameters:
    """Movie-level settings shared by all tracks of one movie"""
    frames: np.ndarray  # movie frame of each tracker frame index (1-based values)
    framerate: float
    movie_length: int
    buffer: Tuple[float, float]
    buffer_all: bool
    preprocess: bool
    n_channels: int
    field_names: Sequence[str]

    @property
    def n_frames(self) -> int:
        return len(self.frames)


def short_branch_mask(track: CompoundTrack) -> np.ndarray:
    """
    Flag segments that are linking noise rather than biology.

    A segment is flagged if it lasts a single frame, or if it is shorter than
    MIN_BRANCH_LENGTH frames and
    - splits from and merges back into the same parent, or
    - only merges, and starts after the compound track started, or
    - only splits, and ends before the compound track ended.
    """
    mask = np.zeros(track.n_seg, dtype=bool)
    for s in range(track.n_seg):
        start_e = track.start_event(s)
        end_e = track.end_event(s)
        length = track.segment_length(s)

        same_parent = start_e.parent is not None and start_e.parent == end_e.parent
        late_merge = (start_e.parent is None and end_e.parent is not None
                      and start_e.frame > track.start)
        early_split = (end_e.parent is None and start_e.parent is not None
                       and end_e.frame < track.end)
        mask[s] = length == 1 or (length < MIN_BRANCH_LENGTH and (same_parent or late_merge or early_split))
    return mask


def classify_visibility(start: int, end: int, n_frames: int, buffer: Tuple[float, float]) -> Visibility:
    """Complete if both buffers fit inside the movie, persistent if the track spans it"""
    if buffer[0] < start and end <= n_frames - buffer[1]:
        return Visibility.COMPLETE
    if start == 1 and end == n_frames:
        return Visibility.PERSISTENT
    return Visibility.INCOMPLETE


def buffer_lengths(start: int, end: int, movie_length: int, buffer: Tuple[float, float]) -> Tuple[int, int]:
    """Frames available before and after a track, limited by the movie edges"""
    sb = start - max(1, start - buffer[0])
    if math.isinf(buffer[1]):
        eb = movie_length - end
    else:
        eb = min(end + buffer[1], movie_length) - end
    return int(sb), int(eb)


def flatten_track(track: CompoundTrack, detection: List[DetectionFrame],
                  params: FlattenParameters) -> Optional[Track]:
    """Build the flattened Track of one compound track (None if nothing remains)"""
    seg_ids = list(range(track.n_seg))
    events = list(track.events)
    if params.preprocess and track.n_seg > 1:
        flagged = short_branch_mask(track)
        seg_ids = [s for s in seg_ids if not flagged[s]]
        events = [e for e in events if not flagged[e.segment]]
        if flagged.any():
            logger.debug(f"Track {track.start}-{track.end}: removed short branches "
                         f"{np.flatnonzero(flagged).tolist()}")
    if not seg_ids:
        logger.debug(f"Track {track.start}-{track.end}: no segment left after branch removal")
        return None

    bounds = [track.segment_bounds(s) for s in seg_ids]
    seg_lengths = np.array([last - first + 1 for first, last in bounds])
    n_seg = len(seg_ids)
    field_length = int(seg_lengths.sum()) + n_seg - 1

    start, end = track.start, track.end
    visibility = classify_visibility(start, end, params.n_frames, params.buffer)

    values = {name: np.full((params.n_channels, field_length), np.nan) for name in params.field_names}
    t = np.full(field_length, np.nan)
    f = np.full(field_length, np.nan)
    seam_mask = np.zeros(field_length, dtype=bool)

    delta = np.concatenate(([0], np.cumsum(seg_lengths[:-1]) + np.arange(1, n_seg))).astype(int)
    seam_mask[delta[1:] - 1] = True

    for s, (first, last), offset in zip(seg_ids, bounds, delta):
        for j, tracker_frame in enumerate(range(first, last + 1)):
            movie_frame = int(params.frames[tracker_frame - 1])
            t[offset + j] = (tracker_frame - 1) * params.framerate
            f[offset + j] = movie_frame
            idx = track.feat_indx[s, tracker_frame - start]
            if idx == 0:
                continue
            frame_info = detection[movie_frame - 1]
            for name in params.field_names:
                if name in frame_info.values:
                    values[name][:, offset + j] = frame_info.get(name, idx)

    # retained events keep their original 1-based segment ids
    seq = np.full((len(events), 4), np.nan)
    for i, e in enumerate(events):
        seq[i, :3] = (e.frame, int(e.kind), e.segment + 1)
        if e.parent is not None:
            seq[i, 3] = e.parent + 1

    result = Track(
        n_seg=n_seg,
        start=start,
        end=end,
        lifetime_s=(end - start + 1) * params.framerate,
        visibility=visibility,
        t=t,
        f=f,
        fields=values,
        seam_mask=seam_mask,
        seq_of_events=seq,
        feat_indx=track.feat_indx[seg_ids],
    )

    if field_length > 1 and (visibility == Visibility.COMPLETE or params.buffer_all):
        sb, eb = buffer_lengths(start, end, params.movie_length, params.buffer)
        if sb > 0:
            result.start_buffer = BufferReadout.empty(params.n_channels, sb)
            result.start_buffer.f[:] = np.arange(start - sb, start)
            result.start_buffer.t[:] = (result.start_buffer.f - 1) * params.framerate
        if eb > 0:
            result.end_buffer = BufferReadout.empty(params.n_channels, eb)
            result.end_buffer.f[:] = np.arange(end + 1, end + eb + 1)
            result.end_buffer.t[:] = (result.end_buffer.f - 1) * params.framerate

    return result


def flatten_tracks(tracks: List[CompoundTrack], detection: List[DetectionFrame],
                   params: FlattenParameters, verbose: bool = False) -> List[Track]:
    """Flatten all compound tracks of a movie"""
    flattened = []
    with PerformanceTimer(logger, "Converting tracker output"):
        for track in tqdm(tracks, desc="Converting tracker output", unit=" tracks", disable=not verbose):
            result = flatten_track(track, detection, params)
            if result is not None:
                flattened.append(result)
    logger.info(f"Converted {len(flattened)}/{len(tracks)} compound tracks")
    return flattened


def reject_border_tracks(tracks: List[Track], image_size: Tuple[int, int], sigma: float) -> List[Track]:
    """
    Remove tracks whose rounded bounding box comes within 4 PSF sigma of the border.

    Positions are 1-based pixel coordinates; image_size is (ny, nx).
    """
    ny, nx = image_size
    w4 = math.ceil(4 * sigma)
    kept = []
    for track in tracks:
        x, y = track.x, track.y
        if np.all(np.isnan(x)) or np.all(np.isnan(y)):
            kept.append(track)
            continue
        min_x, max_x = matlab_round(np.nanmin(x)), matlab_round(np.nanmax(x))
        min_y, max_y = matlab_round(np.nanmin(y)), matlab_round(np.nanmax(y))
        if min_x <= w4 or min_y <= w4 or max_x > nx - w4 or max_y > ny - w4:
            logger.debug(f"Track {track.start}-{track.end} rejected at image border "
                         f"(x {min_x}-{max_x}, y {min_y}-{max_y})")
            continue
        kept.append(track)
    logger.info(f"Removed {len(tracks) - len(kept)} tracks at the image border (margin {w4} px)")
    return kept
