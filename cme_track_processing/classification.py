#!/usr/bin/env python3
"""
Post-processing: validity categories of tracks

Categories:
    1  single tracks, complete, valid gaps
    2  single tracks, complete, invalid gaps
    3  single tracks cut at the beginning or end of the movie
    4  single tracks, persistent
    5-8 the same for compound tracks

After the initial assignment a track can only be demoted (1 -> 2, 5 -> 6),
rejected (any category -> 2) or, for single tracks with invalid gaps,
rescued (2 -> 1). All changes go through CategoryStateMachine, which records
every transition.

The stages run in the order of CLASSIFICATION_STAGES; each takes and returns
the track list so that the hotspot split can replace tracks by their pieces.

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

import copy
from collections import Counter
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from .module_logger import get_module_logger, PerformanceTimer
from .track import BufferReadout, Track, Visibility
from .utils import binary_segment_lengths, prctile

logger = get_module_logger('classification')

# p-value below which a buffer frame carries significant signal
BUFFER_ALPHA = 0.05
# background frames required in a row in each buffer
MIN_BACKGROUND_RUN = 2
# rescued tracks need more frames than this
MIN_RESCUE_LENGTH = 4
# hotspot candidates need more frames than this
MIN_SPLIT_LENGTH = 5
# pieces produced by a hotspot split need at least this many frames
MIN_PIECE_LENGTH = 5
MAX_GAP_FRACTION = 0.5
MAX_LARGE_STEPS = 4


class TrackCategory(IntEnum):
    SINGLE_VALID = 1
    SINGLE_INVALID_GAPS = 2
    SINGLE_INCOMPLETE = 3
    SINGLE_PERSISTENT = 4
    COMPOUND_VALID = 5
    COMPOUND_INVALID_GAPS = 6
    COMPOUND_INCOMPLETE = 7
    COMPOUND_PERSISTENT = 8


DEMOTIONS = {
    TrackCategory.SINGLE_VALID: TrackCategory.SINGLE_INVALID_GAPS,
    TrackCategory.COMPOUND_VALID: TrackCategory.COMPOUND_INVALID_GAPS,
}
RESCUES = {
    TrackCategory.SINGLE_INVALID_GAPS: TrackCategory.SINGLE_VALID,
}
# target of a rejection, reachable from every other category
REJECTED = TrackCategory.SINGLE_INVALID_GAPS


class CategoryTransition(NamedTuple):
    start: int
    end: int
    source: TrackCategory
    target: TrackCategory
    reason: str


class CategoryStateMachine:
    """
    Guards and records category changes.

    Only the transitions listed in DEMOTIONS and RESCUES and rejections to
    REJECTED are allowed; anything else raises ValueError.
    """

    def __init__(self):
        self.history: List[CategoryTransition] = []

    @staticmethod
    def initial_category(track: Track) -> TrackCategory:
        offset = 0 if track.n_seg == 1 else 4
        if track.visibility == Visibility.COMPLETE:
            base = 1 if track.all_gaps_valid else 2
        elif track.visibility == Visibility.INCOMPLETE:
            base = 3
        else:
            base = 4
        return TrackCategory(base + offset)

    def assign(self, track: Track) -> TrackCategory:
        track.cat_idx = self.initial_category(track)
        return track.cat_idx

    def transition(self, track: Track, target: TrackCategory, reason: str,
                   rejection: bool = False) -> None:
        source = TrackCategory(track.cat_idx)
        allowed = DEMOTIONS.get(source) == target or RESCUES.get(source) == target
        if rejection:
            allowed = target == REJECTED and source != REJECTED
        if not allowed:
            raise ValueError(f"Category transition {source.value} -> {target.value} is not allowed")
        track.cat_idx = target
        self.history.append(CategoryTransition(track.start, track.end, source, target, reason))
        logger.debug(f"Track {track.start}-{track.end}: category {source.value} -> {target.value} ({reason})")

    def demote(self, track: Track, reason: str) -> bool:
        target = DEMOTIONS.get(track.cat_idx)
        if target is None:
            return False
        self.transition(track, target, reason)
        return True

    def rescue(self, track: Track, reason: str) -> bool:
        target = RESCUES.get(track.cat_idx)
        if target is None:
            return False
        self.transition(track, target, reason)
        return True

    def reject(self, track: Track, reason: str) -> bool:
        if track.cat_idx == REJECTED:
            return False
        self.transition(track, REJECTED, reason, rejection=True)
        return True

    def counts(self) -> Counter:
        """Number of transitions per reason"""
        return Counter(t.reason for t in self.history)


@dataclass
class ClassificationParameters:
    master: int
    framerate: float
    movie_length: int
    cohort_bounds_s: Sequence[float] = (10, 20, 40, 60, 80, 100, 125, 150)
    force_diffraction_limited: bool = False


@dataclass
class ClassificationContext:
    params: ClassificationParameters
    machine: CategoryStateMachine = field(default_factory=CategoryStateMachine)
    lft_hists_before: Optional[Dict[int, np.ndarray]] = None
    lft_hists_after: Optional[Dict[int, np.ndarray]] = None
    n_split: int = 0
    n_pieces: int = 0


def max_intensity(track: Track, master: int) -> float:
    values = track.A[master]
    return float(np.nanmax(values)) if np.any(np.isfinite(values)) else np.nan


def lifetime_histograms(tracks: List[Track], framerate: float, movie_length: int) -> Dict[int, np.ndarray]:
    """Per category: number of tracks with lifetime 1..movie_length frames"""
    hists = {int(c): np.zeros(movie_length, dtype=int) for c in TrackCategory}
    for track in tracks:
        if track.cat_idx is None:
            continue
        n = int(np.clip(round(track.lifetime_s / framerate), 1, movie_length))
        hists[int(track.cat_idx)][n - 1] += 1
    return hists


def cohort_edges(cohort_bounds_s: Sequence[float], framerate: float, movie_length: int) -> np.ndarray:
    """Lifetime cohort boundaries in seconds, from two frames to the movie duration"""
    min_lft = 2 * framerate
    duration = movie_length * framerate
    inner = [b for b in cohort_bounds_s if min_lft < b < duration]
    return np.array([min_lft] + inner + [duration], dtype=float)


def cohort_index(lifetime_s: float, edges: np.ndarray) -> Optional[int]:
    hits = np.flatnonzero((edges[:-1] <= lifetime_s) & (lifetime_s < edges[1:]))
    return int(hits[0]) if hits.size else None


# ----------------------------------------------------------------------
# Stages
# ----------------------------------------------------------------------

def assign_initial_categories(tracks: List[Track], ctx: ClassificationContext) -> List[Track]:
    """Category from segment count, visibility and gap validity"""
    for track in tracks:
        ctx.machine.assign(track)
    logger.info(f"Initial categories: {dict(sorted(Counter(int(t.cat_idx) for t in tracks).items()))}")
    return tracks


def flag_diffraction_limited(tracks: List[Track], ctx: ClassificationContext) -> List[Track]:
    """A track is diffraction-limited if all its detections pass the residual normality test"""
    m = ctx.params.master
    for track in tracks:
        h_ad = track.fields.get('hval_AD')
        if h_ad is None:
            track.is_ccp = True
            continue
        detected = ~track.gap_vect if track.gap_vect is not None else np.ones(len(track), dtype=bool)
        track.is_ccp = bool(np.nansum(h_ad[m, detected]) == 0)
    logger.info(f"{sum(t.is_ccp for t in tracks)}/{len(tracks)} tracks are diffraction-limited")
    return tracks


def rescue_by_cohort(tracks: List[Track], ctx: ClassificationContext) -> List[Track]:
    """
    Promote single tracks with invalid gaps whose maximum intensity reaches the
    2.5th percentile of valid tracks of the same lifetime cohort.
    """
    p = ctx.params
    edges = cohort_edges(p.cohort_bounds_s, p.framerate, p.movie_length)
    valid = [t for t in tracks if t.cat_idx == TrackCategory.SINGLE_VALID]
    lifetimes = np.array([t.lifetime_s for t in valid])
    max_int = np.array([max_intensity(t, p.master) for t in valid])

    thresholds = np.full(len(edges) - 1, np.nan)
    for i in range(len(edges) - 1):
        in_cohort = (edges[i] <= lifetimes) & (lifetimes < edges[i + 1])
        thresholds[i] = prctile(max_int[in_cohort], 2.5)
    logger.debug(f"Cohort edges {edges.tolist()}, max. intensity thresholds {thresholds.tolist()}")

    ctx.lft_hists_before = lifetime_histograms(tracks, p.framerate, p.movie_length)
    n_rescued = 0
    for track in tracks:
        if track.cat_idx != TrackCategory.SINGLE_INVALID_GAPS or track.length <= MIN_RESCUE_LENGTH:
            continue
        i = cohort_index(track.lifetime_s, edges)
        if i is None or np.isnan(thresholds[i]):
            continue
        if max_intensity(track, p.master) >= thresholds[i]:
            n_rescued += ctx.machine.rescue(track, 'cohort intensity')
    ctx.lft_hists_after = lifetime_histograms(tracks, p.framerate, p.movie_length)
    logger.info(f"Rescued {n_rescued} tracks with invalid gaps")
    return tracks


def has_background_run(buffer: Optional[BufferReadout], master: int,
                       min_run: int = MIN_BACKGROUND_RUN) -> bool:
    """True if the buffer has min_run consecutive frames without significant signal"""
    if buffer is None or len(buffer) == 0:
        return False
    with np.errstate(invalid='ignore'):
        significant = buffer.pval_Ar[master] < BUFFER_ALPHA
    lengths, values = binary_segment_lengths(significant)
    return bool(np.any(lengths[~values] >= min_run))


def check_buffer_background(tracks: List[Track], ctx: ClassificationContext) -> List[Track]:
    """
    Demote valid single tracks unless both buffers reach background and
    no buffer frame is brighter than the track.
    """
    m = ctx.params.master
    n_demoted = 0
    for track in tracks:
        if track.cat_idx != TrackCategory.SINGLE_VALID:
            continue
        background = has_background_run(track.start_buffer, m) and has_background_run(track.end_buffer, m)
        brighter = False
        if background:
            buffer_int = np.concatenate([b.A[m] + b.c[m] for b in (track.start_buffer, track.end_buffer)])
            track_int = track.A[m] + track.c[m]
            if np.any(np.isfinite(buffer_int)) and np.any(np.isfinite(track_int)):
                brighter = np.nanmax(buffer_int) > np.nanmax(track_int)
        if not background or brighter:
            n_demoted += ctx.machine.demote(track, 'buffer signal')
    logger.info(f"Buffer test demoted {n_demoted} tracks")
    return tracks


def force_diffraction_limited(tracks: List[Track], ctx: ClassificationContext) -> List[Track]:
    """Demote valid single tracks that are not diffraction-limited (if requested)"""
    if not ctx.params.force_diffraction_limited:
        return tracks
    n_demoted = 0
    for track in tracks:
        if track.cat_idx == TrackCategory.SINGLE_VALID and not track.is_ccp:
            n_demoted += ctx.machine.demote(track, 'not diffraction-limited')
    logger.info(f"Demoted {n_demoted} tracks that are not diffraction-limited")
    return tracks


def gap_background_cuts(track: Track, master: int) -> np.ndarray:
    """Gap slots where the amplitude is below background (one-sided t-test, p < 0.05)"""
    gaps = track.gap_positions()
    if gaps.size == 0 or 'sigma_r' not in track.fields or 'A_pstd' not in track.fields:
        return np.zeros(0, dtype=int)
    with np.errstate(divide='ignore', invalid='ignore'):
        npx = np.round((track.sigma_r[master, gaps] / track.SE_sigma_r[master, gaps]) ** 2 / 2 + 1)
        A = track.A[master, gaps]
        sigma_A = track.A_pstd[master, gaps]
        T = (A - sigma_A) / (sigma_A / np.sqrt(npx))
        pval = stats.t.cdf(T, npx - 1)
        return gaps[pval < 0.05]


def enforce_piece_length(cuts: np.ndarray, length: int, min_piece: int = MIN_PIECE_LENGTH) -> np.ndarray:
    """Drop cuts that would leave a piece shorter than min_piece frames"""
    if cuts.size == 0:
        return cuts
    delta = np.diff(np.concatenate(([0], cuts, [length - 1])))
    return cuts[(delta[:-1] >= min_piece) & (delta[1:] >= min_piece)]


def positions_separate(track: Track, cut: int, master: int) -> bool:
    """
    True if the positions before and after the cut form two distinct clouds.

    Both clouds are projected onto the line through their medians; they are
    distinct if the 95th percentile of one lies below the 5th percentile of
    the other.
    """
    x, y = track.x[master], track.y[master]
    x1, y1, x2, y2 = x[:cut], y[:cut], x[cut + 1:], y[cut + 1:]
    if not (np.any(np.isfinite(x1)) and np.any(np.isfinite(x2))):
        return False
    mux1, muy1 = np.nanmedian(x1), np.nanmedian(y1)
    mux2, muy2 = np.nanmedian(x2), np.nanmedian(y2)
    v = np.array([mux2 - mux1, muy2 - muy1])
    norm = np.linalg.norm(v)
    if not np.isfinite(norm) or norm == 0:
        return False
    v = v / norm
    sp1 = v[0] * (x1 - mux1) + v[1] * (y1 - muy1)
    sp2 = v[0] * (x2 - mux1) + v[1] * (y2 - muy1)
    m1, m2 = np.nanmean(sp1), np.nanmean(sp2)
    if m1 < m2:
        return bool(prctile(sp1, 95) < prctile(sp2, 5))
    if m1 > m2:
        return bool(prctile(sp1, 5) > prctile(sp2, 95))
    return False


def trim_gap_edges(bounds, gap_vect: Optional[np.ndarray]) -> List[Tuple[int, int]]:
    """Shrink (lo, hi) slot ranges until both ends are detections; empty ranges are dropped"""
    trimmed = []
    for lo, hi in bounds:
        if gap_vect is not None:
            while lo <= hi and gap_vect[lo]:
                lo += 1
            while hi >= lo and gap_vect[hi]:
                hi -= 1
        if lo <= hi:
            trimmed.append((lo, hi))
    return trimmed


def cut_track(track: Track, cuts: Sequence[int]) -> List[Track]:
    """
    Split a single-segment track at the given slots.

    The cut slots are dropped, together with the rest of a multi-frame gap
    they fall into, so that every piece starts and ends on a detection. Each
    piece inherits all per-frame fields, re-sliced, and the gaps it fully
    contains. The first piece keeps the start buffer, the last piece the end
    buffer.
    """
    framerate = track.lifetime_s / track.length
    cuts = sorted(int(c) for c in cuts)
    bounds = trim_gap_edges(
        zip([0] + [c + 1 for c in cuts], [c - 1 for c in cuts] + [len(track) - 1]), track.gap_vect)

    pieces = []
    for i, (lo, hi) in enumerate(bounds):
        sl = slice(lo, hi + 1)
        start, end = track.start + lo, track.start + hi
        gap_idx, gap_status = [], []
        for slots, status in zip(track.gap_idx, track.gap_status):
            if slots[0] >= lo and slots[-1] <= hi:
                gap_idx.append(slots - lo)
                gap_status.append(status)
        piece = Track(
            n_seg=1,
            start=start,
            end=end,
            lifetime_s=(end - start + 1) * framerate,
            visibility=track.visibility,
            t=track.t[sl].copy(),
            f=track.f[sl].copy(),
            fields={name: values[:, sl].copy() for name, values in track.fields.items()},
            seam_mask=track.seam_mask[sl].copy(),
            seq_of_events=np.array([[start, 1, 1, np.nan], [end, 2, 1, np.nan]]),
            feat_indx=track.feat_indx[:, sl].copy() if track.feat_indx is not None else None,
            gap_vect=track.gap_vect[sl].copy() if track.gap_vect is not None else None,
            gap_status=np.array(gap_status, dtype=int),
            gap_idx=gap_idx,
            start_buffer=copy.deepcopy(track.start_buffer) if i == 0 else None,
            end_buffer=copy.deepcopy(track.end_buffer) if i == len(bounds) - 1 else None,
            cat_idx=track.cat_idx,
            is_ccp=track.is_ccp,
        )
        pieces.append(piece)
    return pieces


def split_hotspots(tracks: List[Track], ctx: ClassificationContext) -> List[Track]:
    """
    Split valid single tracks that are two events at the same spot.

    A gap is a split point if its amplitude is at background level and the
    positions before and after it are spatially separated.
    """
    m = ctx.params.master
    kept, pieces = [], []
    for track in tracks:
        is_candidate = (track.cat_idx == TrackCategory.SINGLE_VALID and track.n_seg == 1
                        and len(track.gap_idx) > 0 and track.length > MIN_SPLIT_LENGTH)
        if not is_candidate:
            kept.append(track)
            continue
        cuts = enforce_piece_length(gap_background_cuts(track, m), track.length)
        cuts = [c for c in cuts if positions_separate(track, c, m)]
        if not cuts:
            kept.append(track)
            continue
        logger.debug(f"Track {track.start}-{track.end}: split at slots {cuts}")
        new = cut_track(track, cuts)
        pieces.extend(new)
        ctx.n_split += 1
        ctx.n_pieces += len(new)
    logger.info(f"Split {ctx.n_split} hotspot tracks into {ctx.n_pieces} tracks")
    return kept + pieces


def reject_gap_dense(tracks: List[Track], ctx: ClassificationContext) -> List[Track]:
    """Reject tracks of any category in which at least half of the frames are gaps"""
    n_rejected = 0
    for track in tracks:
        if track.n_gaps / track.length >= MAX_GAP_FRACTION:
            n_rejected += ctx.machine.reject(track, 'gap density')
    logger.info(f"Gap density rejected {n_rejected} tracks")
    return tracks


def step_lengths(track: Track, master: int) -> np.ndarray:
    return np.sqrt(np.diff(track.x[master]) ** 2 + np.diff(track.y[master]) ** 2)


def reject_displacement_outliers(tracks: List[Track], ctx: ClassificationContext) -> List[Track]:
    """
    Demote valid single tracks with more than four frame-to-frame steps larger
    than the 95th percentile of the median step of all tracks.
    """
    m = ctx.params.master
    steps = [step_lengths(t, m) for t in tracks]
    medians = np.array([np.nanmedian(d) if np.any(np.isfinite(d)) else np.nan for d in steps])
    threshold = prctile(medians, 95)
    if np.isnan(threshold):
        return tracks
    n_demoted = 0
    for track, d in zip(tracks, steps):
        if track.cat_idx != TrackCategory.SINGLE_VALID:
            continue
        with np.errstate(invalid='ignore'):
            n_large = int(np.sum(d > threshold))
        if n_large > MAX_LARGE_STEPS:
            n_demoted += ctx.machine.demote(track, 'displacement outliers')
    logger.info(f"Displacement test (threshold {threshold:.3f} px) demoted {n_demoted} tracks")
    return tracks


ClassificationStage = Callable[[List[Track], ClassificationContext], List[Track]]

CLASSIFICATION_STAGES: Sequence[ClassificationStage] = (
    assign_initial_categories,
    flag_diffraction_limited,
    rescue_by_cohort,
    check_buffer_background,
    force_diffraction_limited,
    split_hotspots,
    reject_gap_dense,
    reject_displacement_outliers,
)


def classify_tracks(tracks: List[Track], params: ClassificationParameters,
                    stages: Sequence[ClassificationStage] = CLASSIFICATION_STAGES):
    """
    Run the classification stages in order.

    Returns:
        (tracks, context) where context holds the transition history and the
        lifetime histograms before and after the rescue
    """
    ctx = ClassificationContext(params=params)
    with PerformanceTimer(logger, "Track classification"):
        for stage in stages:
            tracks = stage(tracks, ctx)
    n_valid = sum(t.cat_idx == TrackCategory.SINGLE_VALID for t in tracks)
    logger.info(f"Valid/total tracks: {n_valid}/{len(tracks)}; transitions {dict(ctx.machine.counts())}")
    return tracks, ctx
