#!/usr/bin/env python3
"""
Fitting module for track re-estimation.

This module fits a symmetric 2D Gaussian plus constant background to a small
image window, either with free position ('xyAc') or with the position held
at its initial value ('Ac'). The PSF sigma is always fixed.

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

import warnings
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
import scipy.optimize
from scipy import stats

FIT_MODES = ('xyAc', 'Ac')

# significance level of the residual normality test (percent)
AD_SIGNIFICANCE = 5.0


@dataclass
class FitResult:
    """Fitted parameters, their standard errors and residual statistics"""
    x: float
    y: float
    A: float
    sigma: float
    c: float
    x_pstd: float = np.nan
    y_pstd: float = np.nan
    A_pstd: float = np.nan
    c_pstd: float = np.nan
    residual_std: float = np.nan
    h_ad: float = np.nan  # 1 if the residuals fail the Anderson-Darling normality test
    n_pixels: int = 0
    success: bool = False

    @classmethod
    def failed(cls, init: Sequence[float], n_pixels: int = 0) -> 'FitResult':
        x0, y0, _, sigma, _ = init
        return cls(x=x0, y=y0, A=np.nan, sigma=sigma, c=np.nan, n_pixels=n_pixels)


def gauss_2d(coords: Tuple[np.ndarray, np.ndarray], x0: float, y0: float, amplitude: float,
             sigma: float, background: float) -> np.ndarray:
    """
    Symmetric 2D Gaussian plus offset.

    Args:
        coords: (x, y) coordinate arrays
        x0, y0: Center coordinates
        amplitude: Peak amplitude above background
        sigma: Standard deviation
        background: Background level

    Returns:
        Function values at the given coordinates
    """
    x, y = coords
    return amplitude * np.exp(-((x - x0) ** 2 + (y - y0) ** 2) / (2 * sigma ** 2)) + background


def window_coordinates(shape: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
    """Pixel coordinates of a window with (0, 0) at its central pixel; x runs along columns"""
    rows, cols = shape
    y, x = np.mgrid[0:rows, 0:cols]
    return x - (cols - 1) / 2.0, y - (rows - 1) / 2.0


def anderson_darling_rejects(residuals: np.ndarray, significance: float = AD_SIGNIFICANCE) -> float:
    """1.0 if normality of the residuals is rejected at the given level (percent), else 0.0"""
    if residuals.size < 8:
        return np.nan
    result = stats.anderson(residuals, dist='norm', method='interpolate')
    return float(result.pvalue < significance / 100.0)


def fit_gaussian_2d(window: np.ndarray, init: Sequence[float], mode: str = 'xyAc') -> FitResult:
    """
    Fit a 2D Gaussian with fixed sigma to an image window.

    NaN pixels are ignored. Position is relative to the window center.

    Args:
        window: 2D image window (odd size, center pixel at the middle)
        init: initial [x0, y0, A, sigma, c]
        mode: 'xyAc' (position, amplitude and background free) or
              'Ac' (amplitude and background free)

    Returns:
        FitResult; success is False and A, c are NaN if the fit failed
    """
    if mode not in FIT_MODES:
        raise ValueError(f"Unknown fit mode '{mode}', expected one of {FIT_MODES}")

    x0, y0, a0, sigma, c0 = (float(v) for v in init)
    xg, yg = window_coordinates(window.shape)
    values = np.asarray(window, dtype=float).ravel()
    valid = np.isfinite(values)
    n_pixels = int(valid.sum())
    coords = (xg.ravel()[valid], yg.ravel()[valid])
    values = values[valid]

    n_params = 4 if mode == 'xyAc' else 2
    if n_pixels <= n_params or not np.isfinite([x0, y0, a0, sigma, c0]).all():
        return FitResult.failed(init, n_pixels)

    if mode == 'xyAc':
        def model(xy, x_, y_, a_, c_):
            return gauss_2d(xy, x_, y_, a_, sigma, c_)
        p0 = [x0, y0, a0, c0]
    else:
        def model(xy, a_, c_):
            return gauss_2d(xy, x0, y0, a_, sigma, c_)
        p0 = [a0, c0]

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            popt, pcov = scipy.optimize.curve_fit(model, coords, values, p0=p0,
                                                  method='trf', maxfev=2000)
    except (RuntimeError, ValueError, TypeError):
        return FitResult.failed(init, n_pixels)

    if not np.all(np.isfinite(popt)):
        return FitResult.failed(init, n_pixels)

    with np.errstate(invalid='ignore'):
        pstd = np.sqrt(np.diag(pcov))
    residuals = values - model(coords, *popt)

    if mode == 'xyAc':
        x_fit, y_fit, a_fit, c_fit = popt
        x_pstd, y_pstd, a_pstd, c_pstd = pstd
    else:
        x_fit, y_fit = x0, y0
        a_fit, c_fit = popt
        x_pstd = y_pstd = np.nan
        a_pstd, c_pstd = pstd

    return FitResult(
        x=float(x_fit), y=float(y_fit), A=float(a_fit), sigma=sigma, c=float(c_fit),
        x_pstd=float(x_pstd), y_pstd=float(y_pstd), A_pstd=float(a_pstd), c_pstd=float(c_pstd),
        residual_std=float(np.std(residuals, ddof=1)),
        h_ad=anderson_darling_rejects(residuals),
        n_pixels=n_pixels,
        success=True,
    )
