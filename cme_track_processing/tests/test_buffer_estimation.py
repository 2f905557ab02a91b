#!/usr/bin/env python3
"""
Tests for gap/buffer signal re-estimation
"""

import math
import unittest

import numpy as np
from scipy import stats

from cme_track_processing.buffer_estimation import (
    background_pvalue, build_work_map, estimate_at_position, estimate_tracks, extract_window
)
from cme_track_processing.loader import ArrayFrameSource
from cme_track_processing.track import BufferReadout, ESTIMATE_FIELDS, GapStatus
from cme_track_processing.tests.synthetic import make_track, render_frame

K_LEVEL = stats.norm.ppf(0.975)


class TestExtractWindow(unittest.TestCase):

    def test_window_inside_image(self):
        image = np.arange(100, dtype=float).reshape(10, 10)
        window = extract_window(image, xi=5, yi=4, half_width=1)
        # 1-based (x=5, y=4) is row 3, column 4
        np.testing.assert_array_equal(window, image[2:5, 3:6])

    def test_window_outside_image_padded(self):
        image = np.ones((10, 10))
        window = extract_window(image, xi=1, yi=1, half_width=2)
        self.assertEqual(window.shape, (5, 5))
        self.assertTrue(np.all(np.isnan(window[:2, :])))
        self.assertTrue(np.all(window[2:, 2:] == 1))


class TestBackgroundPValue(unittest.TestCase):

    def test_combined_degrees_of_freedom(self):
        A, A_pstd, std, npx = 12.0, 3.0, 4.0, 81
        se_sigma_r = std / math.sqrt(2 * (npx - 1))
        se_r = se_sigma_r * K_LEVEL
        df2 = (npx - 1) * (A_pstd ** 2 + se_r ** 2) ** 2 / (A_pstd ** 4 + se_r ** 4)
        T = (A - std * K_LEVEL) / math.sqrt((A_pstd ** 2 + se_r ** 2) / npx)
        pval, se = background_pvalue(A, A_pstd, std, npx, K_LEVEL)
        self.assertAlmostEqual(se, se_sigma_r)
        self.assertAlmostEqual(pval, stats.t.cdf(-T, df2))

    def test_bright_signal_is_significant(self):
        pval, _ = background_pvalue(100.0, 2.0, 2.0, 81, K_LEVEL)
        self.assertLess(pval, 0.05)

    def test_background_is_not_significant(self):
        pval, _ = background_pvalue(0.5, 1.0, 2.0, 81, K_LEVEL)
        self.assertGreater(pval, 0.05)


class TestEstimateAtPosition(unittest.TestCase):

    def setUp(self):
        self.rng = np.random.default_rng(1)
        self.labels = np.zeros((41, 41), dtype=int)

    def test_signal(self):
        frame = render_frame([(20.3, 19.8, 100.0)], rng=self.rng)
        est = estimate_at_position(20.0, 20.0, frame, self.labels, 80.0, 10.0, 1.0, 1.0, K_LEVEL)
        self.assertEqual(set(est), set(ESTIMATE_FIELDS))
        self.assertAlmostEqual(est['x'], 20.3, delta=0.1)
        self.assertAlmostEqual(est['y'], 19.8, delta=0.1)
        self.assertAlmostEqual(est['A'], 100.0, delta=8.0)
        self.assertLess(est['pval_Ar'], 0.05)

    def test_background(self):
        frame = render_frame([], rng=self.rng)
        est = estimate_at_position(20.0, 20.0, frame, self.labels, 80.0, 10.0, 1.0, 1.0, K_LEVEL)
        self.assertGreater(est['pval_Ar'], 0.05)
        self.assertAlmostEqual(est['c'], 10.0, delta=1.5)

    def test_far_fit_falls_back_to_initial_position(self):
        # no spot under the window center, a bright one beyond 2 sigma
        frame = render_frame([(22.6, 20.0, 200.0)], rng=self.rng)
        est = estimate_at_position(20.0, 20.0, frame, self.labels, 80.0, 10.0, 1.0, 1.0, K_LEVEL)
        self.assertEqual((est['x'], est['y']), (20.0, 20.0))

    def test_other_mask_component_excluded(self):
        frame = render_frame([(20.0, 20.0, 100.0)], rng=self.rng)
        frame[:, 22:] = 1000.0
        labels = np.zeros((41, 41), dtype=int)
        labels[:, 22:] = 2
        est = estimate_at_position(20.0, 20.0, frame, labels, 80.0, 10.0, 1.0, 1.0, K_LEVEL)
        self.assertAlmostEqual(est['A'], 100.0, delta=10.0)
        self.assertAlmostEqual(est['c'], 10.0, delta=2.0)

    def test_nan_position(self):
        frame = render_frame([], rng=self.rng)
        est = estimate_at_position(np.nan, 20.0, frame, self.labels, 80.0, 10.0, 1.0, 1.0, K_LEVEL)
        self.assertTrue(np.isnan(est['A']))
        self.assertTrue(np.isnan(est['pval_Ar']))


class TestEstimateTracks(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(5)
        # spot at (20, 20) in frames 10-16, background elsewhere; 20 frames
        frames = np.stack([render_frame([(20.0, 20.0, 100.0)] if 10 <= f <= 16 else [], rng=rng)
                           for f in range(1, 21)])
        self.source = ArrayFrameSource(frames)

    def make_track_with_buffers(self):
        x = [20.0, 20.0, 20.0, np.nan, 20.0, 20.0, 20.0]
        track = make_track(x, start=10)
        track.gap_vect = np.isnan(track.x[0])
        track.gap_idx = [np.array([3])]
        track.gap_status = np.array([GapStatus.VALID])
        track.x[0, 3] = track.y[0, 3] = 20.0
        track.A[0, 3], track.c[0, 3] = 100.0, 10.0
        track.start_buffer = BufferReadout.empty(1, 3)
        track.start_buffer.f[:] = [7, 8, 9]
        track.end_buffer = BufferReadout.empty(1, 3)
        track.end_buffer.f[:] = [17, 18, 19]
        return track

    def test_work_map(self):
        work = build_work_map([self.make_track_with_buffers()])
        self.assertEqual(sorted(work), [7, 8, 9, 13, 17, 18, 19])
        self.assertEqual(work[13], [('gap', 0, 3)])
        self.assertEqual(work[17], [('end_buffer', 0, 0)])

    def test_gap_and_buffers_estimated(self):
        track = self.make_track_with_buffers()
        estimate_tracks([track], self.source, np.array([1.0]), K_LEVEL)

        self.assertLess(track.pval_Ar[0, 3], 0.05)
        self.assertAlmostEqual(track.A[0, 3], 100.0, delta=10.0)
        # detections are not re-estimated
        self.assertTrue(np.isnan(track.pval_Ar[0, 0]))
        self.assertTrue(np.all(track.start_buffer.pval_Ar[0] > 0.05))
        self.assertTrue(np.all(track.end_buffer.pval_Ar[0] > 0.05))
        self.assertTrue(np.all(np.isfinite(track.end_buffer.A[0])))


if __name__ == '__main__':
    unittest.main()
