#!/usr/bin/env python3
"""
Tests for the typed segment graph of compound tracks
"""

import unittest

import numpy as np

from cme_track_processing.segment_graph import (
    CompoundTrack, EventType, TopologyError, TrackEvent, relabel_segments
)
from cme_track_processing.tests.synthetic import compound_track, single_track


def split_track():
    """Segment 1 (frames 1-10) splits into segment 2 at frame 5"""
    seq = [[1, 1, 1, np.nan], [5, 1, 2, 1], [10, 2, 1, np.nan], [10, 2, 2, np.nan]]
    feat = np.zeros((2, 10), dtype=int)
    feat[0, :] = np.arange(1, 11)
    feat[1, 4:] = np.arange(1, 7)
    x = np.where(feat > 0, 20.0, np.nan)
    return compound_track(seq, feat, x, x)


class TestCompoundTrack(unittest.TestCase):

    def test_events_are_zero_based(self):
        track = split_track()
        start = track.start_event(1)
        self.assertEqual(start.frame, 5)
        self.assertEqual(start.kind, EventType.START)
        self.assertEqual(start.parent, 0)
        self.assertIsNone(track.start_event(0).parent)

    def test_accessors(self):
        track = split_track()
        self.assertEqual(track.n_seg, 2)
        self.assertEqual(track.start, 1)
        self.assertEqual(track.end, 10)
        self.assertEqual(track.n_frames, 10)
        self.assertEqual(track.segment_ids, [0, 1])
        self.assertEqual([e.segment for e in track.children(0)], [1])
        self.assertEqual(track.x_matrix().shape, (2, 10))

    def test_event_matrix_export(self):
        track = split_track()
        seq = track.to_seq_of_events()
        np.testing.assert_array_equal(seq[:, :3], [[1, 1, 1], [5, 1, 2], [10, 2, 1], [10, 2, 2]])
        self.assertEqual(seq[1, 3], 1)
        self.assertTrue(np.isnan(seq[0, 3]))

    def test_merge_segment_ends_one_frame_early(self):
        seq = [[1, 1, 1, np.nan], [3, 1, 2, np.nan], [8, 2, 2, 1], [10, 2, 1, np.nan]]
        feat = np.zeros((2, 10), dtype=int)
        feat[0, :] = 1
        feat[1, 2:7] = 1
        track = compound_track(seq, feat, np.where(feat > 0, 1.0, np.nan), np.where(feat > 0, 1.0, np.nan))
        self.assertEqual(track.segment_bounds(1), (3, 7))
        self.assertEqual(track.segment_length(1), 5)
        self.assertEqual(track.segment_bounds(0), (1, 10))

    def test_record_with_matlab_names(self):
        class Record:
            pass
        source = single_track(4, 9)
        record = Record()
        record.seqOfEvents = source.to_seq_of_events()
        record.tracksFeatIndxCG = source.feat_indx
        record.tracksCoordAmpCG = source.coord_amp
        track = CompoundTrack.from_tracker_record(record)
        self.assertEqual((track.start, track.end), (4, 9))
        track.validate()

    def test_record_without_fields(self):
        with self.assertRaises(KeyError):
            CompoundTrack.from_tracker_record({'seq_of_events': np.zeros((2, 4))})


class TestValidation(unittest.TestCase):

    def test_valid_tracks_pass(self):
        split_track().validate()
        single_track(1, 5).validate()

    def test_missing_end_event(self):
        track = split_track()
        track.events = [e for e in track.events if not (e.segment == 1 and e.kind == EventType.END)]
        with self.assertRaises(TopologyError):
            track.validate()

    def test_inactive_parent(self):
        seq = [[1, 1, 1, np.nan], [4, 2, 1, np.nan], [6, 1, 2, 1], [10, 2, 2, np.nan]]
        feat = np.zeros((2, 10), dtype=int)
        feat[0, :4] = 1
        feat[1, 5:] = 1
        x = np.where(feat > 0, 1.0, np.nan)
        with self.assertRaises(TopologyError):
            compound_track(seq, feat, x, x).validate()

    def test_matrix_size_mismatch(self):
        track = single_track(1, 5)
        track.coord_amp = track.coord_amp[:, :-8]
        with self.assertRaises(TopologyError):
            track.validate()


class TestRelabel(unittest.TestCase):

    def test_order_of_first_appearance(self):
        events = [
            TrackEvent(1, EventType.START, 3),
            TrackEvent(2, EventType.START, 1, parent=3),
            TrackEvent(5, EventType.END, 1, parent=7),
            TrackEvent(6, EventType.END, 3),
        ]
        relabelled, order = relabel_segments(events)
        self.assertEqual(order, [3, 1])
        self.assertEqual([e.segment for e in relabelled], [0, 1, 1, 0])
        self.assertEqual(relabelled[1].parent, 0)
        # segment 7 no longer exists
        self.assertIsNone(relabelled[2].parent)


if __name__ == '__main__':
    unittest.main()
