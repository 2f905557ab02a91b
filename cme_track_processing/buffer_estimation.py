#!/usr/bin/env python3
"""
Signal re-estimation in gaps and buffers

Valid gaps and the buffer frames before/after each track carry no detection.
Their amplitude, background and position are re-estimated by fitting the
PSF model to the raw frame at the interpolated (gaps) or the first/last
(buffers) position of the track, and a one-sided t-test decides whether the
fitted amplitude exceeds the local noise level.

Frames are visited in order, channel by channel, so that every frame and
mask is read once for all tracks that need it.

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
from collections import defaultdict
from typing import Dict, List, Tuple

import numpy as np
from scipy import stats
from tqdm import tqdm

from .fitting import fit_gaussian_2d
from .loader import FrameSource
from .module_logger import get_module_logger, PerformanceTimer
from .track import ESTIMATE_FIELDS, Track
from .utils import matlab_round

logger = get_module_logger('buffer_estimation')

GAP, START_BUFFER, END_BUFFER = 'gap', 'start_buffer', 'end_buffer'


def extract_window(image: np.ndarray, xi: int, yi: int, half_width: int, fill=np.nan) -> np.ndarray:
    """
    Square window of side 2*half_width+1 centred on the 1-based pixel (xi, yi).

    Pixels outside the image are set to fill.
    """
    size = 2 * half_width + 1
    window = np.full((size, size), fill, dtype=float)
    ny, nx = image.shape
    r0, c0 = yi - 1 - half_width, xi - 1 - half_width
    rs, re = max(r0, 0), min(r0 + size, ny)
    cs, ce = max(c0, 0), min(c0 + size, nx)
    if rs < re and cs < ce:
        window[rs - r0:re - r0, cs - c0:ce - c0] = image[rs:re, cs:ce]
    return window


def nan_estimate(x: float, y: float) -> Dict[str, float]:
    estimate = {name: np.nan for name in ESTIMATE_FIELDS}
    estimate['x'], estimate['y'] = x, y
    return estimate


def background_pvalue(A: float, A_pstd: float, residual_std: float, n_pixels: int,
                      k_level: float) -> Tuple[float, float]:
    """
    One-sided p-value of H0: amplitude at the background noise level.

    The amplitude is compared with k_level residual standard deviations; the
    degrees of freedom combine the amplitude error and the standard error of
    the residual standard deviation (Welch-Satterthwaite form).

    Returns:
        (p-value, standard error of the residual standard deviation)
    """
    se_sigma_r = residual_std / math.sqrt(2 * (n_pixels - 1))
    se_r = se_sigma_r * k_level
    with np.errstate(divide='ignore', invalid='ignore'):
        df2 = (n_pixels - 1) * (A_pstd ** 2 + se_r ** 2) ** 2 / (A_pstd ** 4 + se_r ** 4)
        scomb = np.sqrt((A_pstd ** 2 + se_r ** 2) / n_pixels)
        T = (A - residual_std * k_level) / scomb
    return float(stats.t.cdf(-T, df2)), se_sigma_r


def estimate_at_position(x: float, y: float, frame: np.ndarray, labels: np.ndarray,
                         a_init: float, c_init: float, sigma_master: float, sigma_ch: float,
                         k_level: float) -> Dict[str, float]:
    """
    Re-estimate the signal at a sub-pixel position of one frame.

    Args:
        x, y: 1-based sub-pixel position
        frame: raw image
        labels: connected components of the cell mask (0 = background)
        a_init, c_init: initial amplitude and background (NaN: from the window)
        sigma_master: PSF sigma of the master channel, sets the window size
        sigma_ch: PSF sigma of the fitted channel
        k_level: background threshold in noise standard deviations

    Returns:
        Dictionary with one value for every name in ESTIMATE_FIELDS
    """
    if not (np.isfinite(x) and np.isfinite(y)):
        return nan_estimate(x, y)

    xi, yi = matlab_round(x), matlab_round(y)
    w2 = math.ceil(2 * sigma_master)
    w4 = math.ceil(4 * sigma_master)

    window = extract_window(frame, xi, yi, w4)
    mask_window = extract_window(labels, xi, yi, w4, fill=0)
    # pixels of other foreground components do not belong to this object
    center_label = mask_window[w4, w4]
    window[(mask_window != center_label) & (mask_window != 0)] = np.nan

    finite = window[np.isfinite(window)]
    if finite.size == 0:
        return nan_estimate(x, y)
    if not np.isfinite(c_init):
        c_init = float(np.percentile(finite, 10))
    if not np.isfinite(a_init):
        a_init = float(np.max(finite) - c_init)

    init = [x - xi, y - yi, a_init, sigma_ch, c_init]
    fit = fit_gaussian_2d(window, init, 'xyAc')
    if fit.success and -w2 < fit.x < w2 and -w2 < fit.y < w2:
        est_x, est_y = xi + fit.x, yi + fit.y
    else:
        fit = fit_gaussian_2d(window, init, 'Ac')
        est_x, est_y = x, y
    if not fit.success:
        return nan_estimate(x, y)

    pval, se_sigma_r = background_pvalue(fit.A, fit.A_pstd, fit.residual_std, fit.n_pixels, k_level)
    return {
        'x': est_x,
        'y': est_y,
        'A': fit.A,
        'c': fit.c,
        'A_pstd': fit.A_pstd,
        'c_pstd': fit.c_pstd,
        'sigma_r': fit.residual_std,
        'SE_sigma_r': se_sigma_r,
        'pval_Ar': pval,
        'hval_AD': fit.h_ad,
    }


def ensure_estimate_fields(track: Track) -> None:
    """Add missing estimate fields to a track as NaN arrays"""
    shape = (track.n_channels, len(track))
    for name in ESTIMATE_FIELDS:
        if name not in track.fields:
            track.fields[name] = np.full(shape, np.nan)


def build_work_map(tracks: List[Track]) -> Dict[int, List[Tuple[str, int, int]]]:
    """
    Estimation jobs per movie frame.

    Returns:
        frame -> list of (kind, track index, slot) where slot indexes the
        track arrays (gaps) or the buffer arrays (buffers)
    """
    work = defaultdict(list)
    for k, track in enumerate(tracks):
        for slot in track.gap_positions(valid_only=True):
            work[int(track.f[slot])].append((GAP, k, int(slot)))
        if track.start_buffer is not None:
            for bi, f in enumerate(track.start_buffer.f):
                work[int(f)].append((START_BUFFER, k, bi))
        if track.end_buffer is not None:
            for bi, f in enumerate(track.end_buffer.f):
                work[int(f)].append((END_BUFFER, k, bi))
    return work


def estimate_tracks(tracks: List[Track], frame_source: FrameSource, sigma: np.ndarray,
                    k_level: float, master: int = 0, verbose: bool = False) -> List[Track]:
    """
    Re-estimate valid gaps and buffers of all tracks, in place.

    Args:
        tracks: flattened tracks with classified gaps and allocated buffers
        frame_source: raw frames and masks of the movie
        sigma: per-channel PSF sigma
        k_level: background threshold in noise standard deviations
        master: master channel index
        verbose: show a progress bar
    """
    sigma = np.atleast_1d(np.asarray(sigma, dtype=float))
    for track in tracks:
        ensure_estimate_fields(track)
    if not tracks:
        return tracks

    n_ch = tracks[0].n_channels
    work = build_work_map(tracks)
    n_jobs = sum(len(v) for v in work.values()) * n_ch
    logger.info(f"Estimating {n_jobs} gap/buffer positions in {len(work)} frames")

    with PerformanceTimer(logger, "Gap and buffer estimation"):
        for f in tqdm(sorted(work), desc="Gap and buffer readout", unit=" frames", disable=not verbose):
            labels = frame_source.read_labels(f)
            for ch in range(n_ch):
                frame = frame_source.read_frame(ch, f)
                for kind, k, slot in work[f]:
                    track = tracks[k]
                    if kind == GAP:
                        target, idx = track.fields, slot
                        src = slot
                    elif kind == START_BUFFER:
                        target, idx = track.start_buffer.values, slot
                        src = 0
                    else:
                        target, idx = track.end_buffer.values, slot
                        src = len(track) - 1
                    estimate = estimate_at_position(
                        track.x[ch, src], track.y[ch, src], frame, labels,
                        track.A[ch, src], track.c[ch, src], sigma[master], sigma[min(ch, sigma.size - 1)],
                        k_level)
                    for name, value in estimate.items():
                        target[name][ch, idx] = value
    return tracks
