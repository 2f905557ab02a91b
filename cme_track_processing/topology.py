#!/usr/bin/env python3
"""
Topology normalization of compound tracks (preprocessing)

Two clean-up steps run before tracks are flattened:

1. compound tracks that last a single frame are discarded
2. a segment that merges into a sibling one frame after the sibling started
   is a linking artifact: both segments describe the same object during the
   overlapping frame. The segment is fused into the sibling ("parent"); in
   each overlapping frame the sample closer to a reference line drawn
   between the non-overlapping neighbours of the two segments is kept.

After fusion segments are renumbered in order of first appearance.

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

from dataclasses import replace
from typing import List, Optional, Tuple

import numpy as np

from .module_logger import get_module_logger, PerformanceTimer
from .segment_graph import (
    CompoundTrack, EventType, TrackEvent, COORD_AMP_STRIDE, relabel_segments
)

logger = get_module_logger('topology')


def remove_single_frame_tracks(tracks: List[CompoundTrack]) -> List[CompoundTrack]:
    """Discard compound tracks whose first and last event share a frame"""
    kept = [t for t in tracks if t.end != t.start]
    logger.info(f"Removed {len(tracks) - len(kept)} single-frame tracks")
    return kept


def _find_event(events: List[TrackEvent], segment: int, kind: EventType) -> Optional[int]:
    for i, e in enumerate(events):
        if e.segment == segment and e.kind == kind:
            return i
    return None


def overlap_reference_window(overlap: np.ndarray, s_first_col: int, n_cols: int,
                             x_seg: np.ndarray, x_parent: np.ndarray) -> Tuple[int, int]:
    """
    Columns anchoring the reference line through an overlap.

    The left anchor is the merging segment's sample just before the overlap,
    the right anchor the parent's sample just after it. An anchor falls back
    to the overlap boundary itself when the overlap touches the start of the
    track or of the merging segment (left) or the end of the track (right),
    or when the neighbouring sample is missing.
    """
    first, last = int(overlap[0]), int(overlap[-1])
    at_left_edge = first == 0 or first == s_first_col
    at_right_edge = last >= n_cols - 1

    if not at_left_edge and not at_right_edge:
        lo, hi = first - 1, last + 1
        if np.isnan(x_seg[lo]):
            lo = first
        if np.isnan(x_parent[hi]):
            hi = last
    elif at_left_edge:
        lo = first
        hi = last if at_right_edge else last + 1
        if np.isnan(x_parent[hi]):
            hi = last
    else:
        lo, hi = first - 1, last
        if np.isnan(x_seg[lo]):
            lo = first
    return lo, hi


def _resolve_overlap(coord_amp: np.ndarray, feat_indx: np.ndarray, seg: int, parent: int,
                     s_first_col: int) -> None:
    """Keep the nearer sample in each overlapping frame and splice seg onto parent (in place)"""
    x = coord_amp[:, 0::COORD_AMP_STRIDE]
    y = coord_amp[:, 1::COORD_AMP_STRIDE]
    n_cols = x.shape[1]

    overlap = np.flatnonzero(~np.isnan(x[parent]) & ~np.isnan(x[seg]))
    if overlap.size:
        lo, hi = overlap_reference_window(overlap, s_first_col, n_cols, x[seg], x[parent])
        if lo == hi:
            x_ref = np.full(overlap.shape, (x[seg, lo] + x[parent, hi]) / 2)
            y_ref = np.full(overlap.shape, (y[seg, lo] + y[parent, hi]) / 2)
        else:
            x_ref = np.interp(overlap, [lo, hi], [x[seg, lo], x[parent, hi]])
            y_ref = np.interp(overlap, [lo, hi], [y[seg, lo], y[parent, hi]])

        rows = np.array([seg, parent])
        d = np.sqrt((x[np.ix_(rows, overlap)] - x_ref) ** 2 + (y[np.ix_(rows, overlap)] - y_ref) ** 2)
        with np.errstate(invalid='ignore'):
            d_min = np.nanmin(np.where(np.isnan(d), np.inf, d), axis=0)
        discard = ~(d == d_min)
        logger.debug(f"Overlap cols {overlap.tolist()}: reference window ({lo}, {hi}), "
                     f"distances {np.round(d, 3).tolist()}")

        for r, row in enumerate(rows):
            for col in overlap[discard[r]]:
                coord_amp[row, col * COORD_AMP_STRIDE:(col + 1) * COORD_AMP_STRIDE] = np.nan
                feat_indx[row, col] = 0

    present = ~np.isnan(coord_amp[seg, 0::COORD_AMP_STRIDE])
    feat_indx[parent, present] = feat_indx[seg, present]
    cols = np.flatnonzero(present)
    if cols.size:
        block = slice(cols[0] * COORD_AMP_STRIDE, (cols[-1] + 1) * COORD_AMP_STRIDE)
        coord_amp[parent, block] = coord_amp[seg, block]


def merge_overlapping_segments(track: CompoundTrack) -> CompoundTrack:
    """
    Fuse segments that merge into a parent with a single frame of overlap.

    Returns a new CompoundTrack; tracks without such segments are returned
    unchanged in content.
    """
    if track.n_seg < 2:
        return track

    events = list(track.events)
    feat_indx = track.feat_indx.copy()
    coord_amp = track.coord_amp.copy()
    removed = []

    for seg in range(track.n_seg):
        start_i = _find_event(events, seg, EventType.START)
        end_i = _find_event(events, seg, EventType.END)
        if start_i is None or end_i is None:
            continue
        seg_start, seg_end = events[start_i], events[end_i]
        parent = seg_end.parent
        if parent is None:
            continue
        parent_start_i = _find_event(events, parent, EventType.START)
        if parent_start_i is None or seg_end.frame - 1 != events[parent_start_i].frame:
            continue

        logger.debug(f"Fusing segment {seg} into {parent} (merge at frame {seg_end.frame})")

        # parent now starts where the fused segment started
        events[parent_start_i] = replace(events[parent_start_i], frame=seg_start.frame)
        events = [e for e in events if e.segment != seg]
        # segments attached to the fused segment are re-attached to the parent
        events = [replace(e, parent=parent if e.segment != parent else None) if e.parent == seg else e
                  for e in events]

        _resolve_overlap(coord_amp, feat_indx, seg, parent, seg_start.frame - track.start)
        removed.append(seg)

    if not removed:
        return track

    events, order = relabel_segments(events)
    return CompoundTrack(events, feat_indx[order], coord_amp[order])


def normalize_topology(tracks: List[CompoundTrack]) -> List[CompoundTrack]:
    """Preprocessing: remove single-frame tracks and fuse overlapping segments"""
    with PerformanceTimer(logger, "Topology normalization"):
        tracks = remove_single_frame_tracks(tracks)
        normalized = []
        n_fused = 0
        for track in tracks:
            merged = merge_overlapping_segments(track)
            n_fused += track.n_seg - merged.n_seg
            normalized.append(merged)
    logger.info(f"Fused {n_fused} overlapping segments in {len(normalized)} tracks")
    return normalized
