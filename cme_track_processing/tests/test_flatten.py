#!/usr/bin/env python3
"""
Tests for track flattening, visibility, buffers and border rejection
"""

import unittest

import numpy as np

from cme_track_processing.flatten import (
    FlattenParameters, buffer_lengths, classify_visibility, flatten_track, reject_border_tracks,
    short_branch_mask
)
from cme_track_processing.track import Visibility
from cme_track_processing.tests.synthetic import (
    DetectionBuilder, compound_track, make_track, single_track
)

MOVIE_LENGTH = 40


def flatten_params(buffer=(5, 5), buffer_all=False, preprocess=True):
    return FlattenParameters(
        frames=np.arange(1, MOVIE_LENGTH + 1), framerate=2.0, movie_length=MOVIE_LENGTH,
        buffer=buffer, buffer_all=buffer_all, preprocess=preprocess, n_channels=1,
        field_names=['x', 'y', 'A', 'c', 'A_pstd', 'c_pstd', 'sigma_r', 'SE_sigma_r', 'pval_Ar', 'hval_AD'],
    )


class TestVisibility(unittest.TestCase):

    def test_complete(self):
        self.assertEqual(classify_visibility(10, 20, 40, (5, 5)), Visibility.COMPLETE)

    def test_cut_at_start(self):
        self.assertEqual(classify_visibility(5, 20, 40, (5, 5)), Visibility.INCOMPLETE)

    def test_cut_at_end(self):
        self.assertEqual(classify_visibility(10, 36, 40, (5, 5)), Visibility.INCOMPLETE)

    def test_persistent(self):
        self.assertEqual(classify_visibility(1, 40, 40, (5, 5)), Visibility.PERSISTENT)

    def test_buffer_lengths(self):
        self.assertEqual(buffer_lengths(10, 20, 40, (5, 5)), (5, 5))
        self.assertEqual(buffer_lengths(3, 38, 40, (5, 5)), (2, 2))
        self.assertEqual(buffer_lengths(10, 20, 40, (5, np.inf)), (5, 20))


class TestShortBranches(unittest.TestCase):

    def test_branch_splitting_and_merging_with_same_parent(self):
        # segment 2 splits from segment 1 at frame 5 and merges back at frame 8
        seq = [[1, 1, 1, np.nan], [5, 1, 2, 1], [8, 2, 2, 1], [12, 2, 1, np.nan]]
        feat = np.zeros((2, 12), dtype=int)
        feat[0, :] = 1
        feat[1, 4:7] = 2
        x = np.where(feat > 0, 20.0, np.nan)
        track = compound_track(seq, feat, x, x)
        np.testing.assert_array_equal(short_branch_mask(track), [False, True])

    def test_long_branch_kept(self):
        seq = [[1, 1, 1, np.nan], [3, 1, 2, 1], [12, 2, 1, np.nan], [12, 2, 2, np.nan]]
        feat = np.zeros((2, 12), dtype=int)
        feat[0, :] = 1
        feat[1, 2:] = 2
        x = np.where(feat > 0, 20.0, np.nan)
        track = compound_track(seq, feat, x, x)
        np.testing.assert_array_equal(short_branch_mask(track), [False, False])

    @staticmethod
    def two_segment_track(seq, first, last):
        """Segment 1 covers frames 1-12, segment 2 the frames first..last"""
        feat = np.zeros((2, 12), dtype=int)
        feat[0, :] = 1
        feat[1, first - 1:last] = 2
        x = np.where(feat > 0, 20.0, np.nan)
        return compound_track(seq, feat, x, x)

    def test_short_late_merge_flagged(self):
        # segment 2 appears at frame 5 and merges into segment 1 at frame 8
        seq = [[1, 1, 1, np.nan], [5, 1, 2, np.nan], [8, 2, 2, 1], [12, 2, 1, np.nan]]
        track = self.two_segment_track(seq, 5, 7)
        np.testing.assert_array_equal(short_branch_mask(track), [False, True])

    def test_short_merge_from_track_start_kept(self):
        seq = [[1, 1, 1, np.nan], [1, 1, 2, np.nan], [4, 2, 2, 1], [12, 2, 1, np.nan]]
        track = self.two_segment_track(seq, 1, 3)
        np.testing.assert_array_equal(short_branch_mask(track), [False, False])

    def test_short_early_split_flagged(self):
        # segment 2 splits from segment 1 at frame 5 and disappears after frame 7
        seq = [[1, 1, 1, np.nan], [5, 1, 2, 1], [7, 2, 2, np.nan], [12, 2, 1, np.nan]]
        track = self.two_segment_track(seq, 5, 7)
        np.testing.assert_array_equal(short_branch_mask(track), [False, True])

    def test_short_split_until_track_end_kept(self):
        seq = [[1, 1, 1, np.nan], [10, 1, 2, 1], [12, 2, 1, np.nan], [12, 2, 2, np.nan]]
        track = self.two_segment_track(seq, 10, 12)
        np.testing.assert_array_equal(short_branch_mask(track), [False, False])


class TestFlattenTrack(unittest.TestCase):

    def setUp(self):
        self.builder = DetectionBuilder(MOVIE_LENGTH)

    def test_single_segment_fields(self):
        feat = self.builder.add_track(10, 20, 15.0, 25.0, gaps=(14,), A=80.0)
        track = compound_track([[10, 1, 1, np.nan], [20, 2, 1, np.nan]], feat,
                               np.where(feat > 0, 15.0, np.nan), np.where(feat > 0, 25.0, np.nan))
        flat = flatten_track(track, self.builder.build(), flatten_params())

        self.assertEqual(len(flat), 11)
        self.assertEqual(flat.visibility, Visibility.COMPLETE)
        self.assertEqual(flat.lifetime_s, 22.0)
        np.testing.assert_array_equal(flat.f, np.arange(10, 21))
        np.testing.assert_array_equal(flat.t, (np.arange(10, 21) - 1) * 2.0)
        self.assertTrue(np.isnan(flat.x[0, 4]))
        self.assertEqual(flat.A[0, 0], 80.0)
        self.assertEqual(flat.y[0, 10], 25.0)
        flat.check_shapes()

    def test_two_segments_are_concatenated_with_a_seam(self):
        # segment 2 splits from segment 1 at frame 15
        feat = np.zeros((2, 11), dtype=int)
        feat[0] = self.builder.add_track(10, 20, 15.0, 15.0)
        feat[1, 5:] = self.builder.add_track(15, 20, 25.0, 25.0)
        x = np.where(feat > 0, np.array([[15.0], [25.0]]), np.nan)
        track = compound_track([[10, 1, 1, np.nan], [15, 1, 2, 1], [20, 2, 1, np.nan], [20, 2, 2, np.nan]],
                               feat, x, x)
        flat = flatten_track(track, self.builder.build(), flatten_params())

        self.assertEqual(flat.n_seg, 2)
        # 11 + 6 frames + 1 seam
        self.assertEqual(len(flat), 18)
        self.assertEqual(flat.x.shape[1], 18)
        self.assertEqual(flat.A.shape[1], 18)
        np.testing.assert_array_equal(np.flatnonzero(flat.seam_mask), [11])
        self.assertTrue(np.isnan(flat.t[11]))
        self.assertEqual(flat.x[0, 12], 25.0)
        self.assertEqual(flat.seq_of_events.shape, (4, 4))

    def test_persistent_track_has_no_buffers(self):
        feat = self.builder.add_track(1, MOVIE_LENGTH, 20.0, 20.0)
        x = np.where(feat > 0, 20.0, np.nan)
        track = compound_track([[1, 1, 1, np.nan], [MOVIE_LENGTH, 2, 1, np.nan]], feat, x, x)
        flat = flatten_track(track, self.builder.build(), flatten_params(buffer_all=True))
        self.assertEqual(flat.visibility, Visibility.PERSISTENT)
        self.assertIsNone(flat.start_buffer)
        self.assertIsNone(flat.end_buffer)

    def test_buffers_of_complete_track(self):
        feat = self.builder.add_track(10, 20, 20.0, 20.0)
        x = np.where(feat > 0, 20.0, np.nan)
        track = compound_track([[10, 1, 1, np.nan], [20, 2, 1, np.nan]], feat, x, x)
        flat = flatten_track(track, self.builder.build(), flatten_params())
        np.testing.assert_array_equal(flat.start_buffer.f, np.arange(5, 10))
        np.testing.assert_array_equal(flat.end_buffer.f, np.arange(21, 26))
        np.testing.assert_array_equal(flat.start_buffer.t, (np.arange(5, 10) - 1) * 2.0)
        self.assertEqual(flat.start_buffer.pval_Ar.shape, (1, 5))

    def test_incomplete_track_buffered_only_with_buffer_all(self):
        feat = self.builder.add_track(3, 12, 20.0, 20.0)
        x = np.where(feat > 0, 20.0, np.nan)
        track = compound_track([[3, 1, 1, np.nan], [12, 2, 1, np.nan]], feat, x, x)
        detection = self.builder.build()
        self.assertIsNone(flatten_track(track, detection, flatten_params()).start_buffer)
        flat = flatten_track(track, detection, flatten_params(buffer_all=True))
        np.testing.assert_array_equal(flat.start_buffer.f, [1, 2])
        self.assertEqual(len(flat.end_buffer), 5)

    def test_short_branch_dropped(self):
        seq = [[1, 1, 1, np.nan], [5, 1, 2, 1], [8, 2, 2, 1], [12, 2, 1, np.nan]]
        feat = np.zeros((2, 12), dtype=int)
        feat[0] = self.builder.add_track(1, 12, 20.0, 20.0)
        feat[1, 4:7] = self.builder.add_track(5, 7, 21.0, 21.0)
        x = np.where(feat > 0, 20.0, np.nan)
        track = compound_track(seq, feat, x, x)
        detection = self.builder.build()
        self.assertEqual(flatten_track(track, detection, flatten_params()).n_seg, 1)
        self.assertEqual(flatten_track(track, detection, flatten_params(preprocess=False)).n_seg, 2)


class TestBorderRejection(unittest.TestCase):

    def test_track_near_right_border_removed(self):
        inside = make_track([20.0, 20.5, 21.0])
        near_border = make_track([30.0, 35.0, 37.6])
        kept = reject_border_tracks([inside, near_border], image_size=(41, 41), sigma=1.0)
        self.assertEqual(len(kept), 1)
        self.assertIs(kept[0], inside)

    def test_track_near_top_border_removed(self):
        track = make_track([20.0, 20.0], y=[4.4, 6.0])
        self.assertEqual(reject_border_tracks([track], image_size=(41, 41), sigma=1.0), [])

    def test_margin_edge(self):
        # max x rounds to 37 = 41 - 4: still inside
        track = make_track([20.0, 37.4])
        self.assertEqual(len(reject_border_tracks([track], image_size=(41, 41), sigma=1.0)), 1)


if __name__ == '__main__':
    unittest.main()
