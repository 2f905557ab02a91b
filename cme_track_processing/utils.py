#!/usr/bin/env python3
"""
Utility functions for track processing

Copyright (C) 2025, Danuser Lab - UTSouthwestern
"""

from typing import Tuple, Union

import numpy as np


def matlab_round(values: Union[float, np.ndarray]) -> Union[int, np.ndarray]:
    """Round half away from zero (numpy rounds half to even)"""
    values = np.asarray(values, dtype=float)
    rounded = np.sign(values) * np.floor(np.abs(values) + 0.5)
    if rounded.ndim == 0:
        return int(rounded) if np.isfinite(rounded) else np.nan
    return rounded


def prctile(values: np.ndarray, q: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """
    Percentile with the midpoint rule, ignoring NaN

    Sample i of n sorted samples sits at percentile 100*(i-0.5)/n; values
    outside the first/last sample are clamped. Empty input gives NaN.
    """
    values = np.asarray(values, dtype=float).ravel()
    values = values[~np.isnan(values)]
    if values.size == 0:
        return np.full(np.shape(q), np.nan) if np.ndim(q) else np.nan
    return np.percentile(values, q, method='hazen')


def binary_segment_lengths(mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Run-length encoding of a boolean vector

    Returns:
        lengths: length of each run of equal values
        values: the value of each run
    """
    mask = np.asarray(mask, dtype=bool).ravel()
    if mask.size == 0:
        return np.zeros(0, dtype=int), np.zeros(0, dtype=bool)
    change = np.flatnonzero(np.diff(mask.astype(np.int8))) + 1
    starts = np.concatenate(([0], change))
    ends = np.concatenate((change, [mask.size]))
    return ends - starts, mask[starts]


def run_bounds(mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Start index, end index (inclusive) and value of each run in a boolean vector"""
    lengths, values = binary_segment_lengths(mask)
    starts = np.concatenate(([0], np.cumsum(lengths)[:-1])).astype(int)
    return starts, starts + lengths - 1, values


def sample_std(values: np.ndarray) -> float:
    """Standard deviation normalized by n-1; 0 for a single sample, NaN-aware"""
    values = np.asarray(values, dtype=float)
    values = values[~np.isnan(values)]
    if values.size == 0:
        return np.nan
    if values.size == 1:
        return 0.0
    return float(np.std(values, ddof=1))
