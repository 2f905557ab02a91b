#!/usr/bin/env python3
"""
Segment graph of a compound track

A compound track from the tracker is a set of segments, each a contiguous run
of frames, tied together by merge and split events. The tracker encodes it as
three parallel arrays (event table, feature indices, coordinates/amplitudes);
here the event table becomes a list of typed TrackEvent records so that the
structural invariants can be checked directly.

Event table semantics:
- every segment has one START and one END event
- START with a parent: the segment splits off the parent at that frame
- END with a parent: the segment merges into the parent at that frame; the
  segment's last detection is then in the frame before

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

from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Dict, List, Optional, Tuple, Any

import numpy as np

# columns per frame in the coordinate/amplitude matrix:
# x, y, z, A, dx, dy, dz, dA
COORD_AMP_STRIDE = 8


class TopologyError(ValueError):
    """Raised when an event table violates the segment-graph invariants"""


class EventType(IntEnum):
    START = 1
    END = 2


@dataclass(frozen=True)
class TrackEvent:
    """One row of the event table"""
    frame: int
    kind: EventType
    segment: int  # 0-based segment id (row in feat_indx/coord_amp)
    parent: Optional[int] = None  # 0-based id of the merge/split partner

    @property
    def is_merge_or_split(self) -> bool:
        return self.parent is not None


@dataclass
class CompoundTrack:
    """
    Tracker output unit: segments plus their event table

    Attributes:
        events: event records sorted by frame
        feat_indx: (nSeg, nFrames) detection index per frame, 1-based, 0 = gap
        coord_amp: (nSeg, 8*nFrames) coordinates/amplitudes, NaN where absent
    Column j of both matrices corresponds to movie frame start + j.
    """
    events: List[TrackEvent]
    feat_indx: np.ndarray
    coord_amp: np.ndarray

    def __post_init__(self):
        self.feat_indx = np.atleast_2d(np.asarray(self.feat_indx)).astype(int)
        self.coord_amp = np.atleast_2d(np.asarray(self.coord_amp, dtype=float))
        self.events = sorted(self.events, key=lambda e: e.frame)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_seq_of_events(cls, seq_of_events: np.ndarray, feat_indx: np.ndarray,
                           coord_amp: np.ndarray) -> 'CompoundTrack':
        """Build from the tracker's (n x 4) event matrix with 1-based ids"""
        seq = np.atleast_2d(np.asarray(seq_of_events, dtype=float))
        events = []
        for frame, kind, segment, parent in seq[:, :4]:
            events.append(TrackEvent(
                frame=int(frame),
                kind=EventType(int(kind)),
                segment=int(segment) - 1,
                parent=None if np.isnan(parent) else int(parent) - 1,
            ))
        # stable sort keeps START before END for single-frame segments
        return cls(events, feat_indx, coord_amp)

    @classmethod
    def from_tracker_record(cls, record: Any) -> 'CompoundTrack':
        """
        Build from one tracker record.

        Accepts the dict produced by the Python tracker (seq_of_events,
        tracks_feat_indx_cg, tracks_coord_amp_cg) as well as a MATLAB struct
        loaded with scipy.io (seqOfEvents, tracksFeatIndxCG, tracksCoordAmpCG).
        """
        def get(*names):
            for name in names:
                if isinstance(record, dict) and name in record:
                    return record[name]
                if hasattr(record, name):
                    return getattr(record, name)
            raise KeyError(f"Tracker record has none of the fields {names}")

        seq = get('seq_of_events', 'seqOfEvents')
        feat = get('tracks_feat_indx_cg', 'tracksFeatIndxCG')
        coord = get('tracks_coord_amp_cg', 'tracksCoordAmpCG')
        if hasattr(feat, 'toarray'):
            feat = feat.toarray()
        if hasattr(coord, 'toarray'):
            coord = coord.toarray()
        return cls.from_seq_of_events(seq, feat, coord)

    def to_seq_of_events(self) -> np.ndarray:
        """Event matrix with 1-based segment ids and NaN for absent parents"""
        seq = np.full((len(self.events), 4), np.nan)
        for i, e in enumerate(self.events):
            seq[i, 0] = e.frame
            seq[i, 1] = int(e.kind)
            seq[i, 2] = e.segment + 1
            if e.parent is not None:
                seq[i, 3] = e.parent + 1
        return seq

    def copy(self) -> 'CompoundTrack':
        return CompoundTrack(list(self.events), self.feat_indx.copy(), self.coord_amp.copy())

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def n_seg(self) -> int:
        return self.feat_indx.shape[0]

    @property
    def start(self) -> int:
        return self.events[0].frame

    @property
    def end(self) -> int:
        return self.events[-1].frame

    @property
    def n_frames(self) -> int:
        return self.feat_indx.shape[1]

    @property
    def segment_ids(self) -> List[int]:
        """Segment ids in order of first appearance in the event table"""
        seen = []
        for e in self.events:
            if e.segment not in seen:
                seen.append(e.segment)
        return seen

    def segment_events(self, segment: int) -> List[TrackEvent]:
        return [e for e in self.events if e.segment == segment]

    def start_event(self, segment: int) -> TrackEvent:
        for e in self.events:
            if e.segment == segment and e.kind == EventType.START:
                return e
        raise TopologyError(f"Segment {segment} has no start event")

    def end_event(self, segment: int) -> TrackEvent:
        for e in self.events:
            if e.segment == segment and e.kind == EventType.END:
                return e
        raise TopologyError(f"Segment {segment} has no end event")

    def segment_bounds(self, segment: int) -> Tuple[int, int]:
        """First and last frame with data; a merge ends one frame before its event"""
        first = self.start_event(segment).frame
        end = self.end_event(segment)
        last = end.frame - 1 if end.is_merge_or_split else end.frame
        return first, last

    def segment_length(self, segment: int) -> int:
        first, last = self.segment_bounds(segment)
        return last - first + 1

    def children(self, segment: int) -> List[TrackEvent]:
        """Events of other segments that split from or merge into this segment"""
        return [e for e in self.events if e.parent == segment]

    def x_matrix(self) -> np.ndarray:
        return self.coord_amp[:, 0::COORD_AMP_STRIDE]

    def y_matrix(self) -> np.ndarray:
        return self.coord_amp[:, 1::COORD_AMP_STRIDE]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Check the event-table invariants; raises TopologyError"""
        if self.coord_amp.shape[0] != self.n_seg:
            raise TopologyError(
                f"coord_amp has {self.coord_amp.shape[0]} rows for {self.n_seg} segments")
        if self.coord_amp.shape[1] != COORD_AMP_STRIDE * self.n_frames:
            raise TopologyError("coord_amp and feat_indx cover different frame ranges")

        starts: Dict[int, TrackEvent] = {}
        ends: Dict[int, TrackEvent] = {}
        for e in self.events:
            if not 0 <= e.segment < self.n_seg:
                raise TopologyError(f"Event references unknown segment {e.segment}")
            table = starts if e.kind == EventType.START else ends
            if e.segment in table:
                raise TopologyError(f"Segment {e.segment} has more than one {e.kind.name} event")
            table[e.segment] = e

        for s in range(self.n_seg):
            if s not in starts or s not in ends:
                raise TopologyError(f"Segment {s} lacks a start or end event")
            if starts[s].frame > ends[s].frame:
                raise TopologyError(f"Segment {s} ends before it starts")

        for e in self.events:
            if e.parent is None:
                continue
            if e.parent == e.segment or not 0 <= e.parent < self.n_seg:
                raise TopologyError(f"Event of segment {e.segment} references invalid parent {e.parent}")
            p_start, p_end = starts[e.parent].frame, ends[e.parent].frame
            if not p_start <= e.frame <= p_end:
                raise TopologyError(
                    f"Parent {e.parent} of segment {e.segment} is not active at frame {e.frame}")

        if self.end - self.start + 1 != self.n_frames:
            raise TopologyError(
                f"Event table spans {self.end - self.start + 1} frames, matrices {self.n_frames}")


def relabel_segments(events: List[TrackEvent]) -> Tuple[List[TrackEvent], List[int]]:
    """
    Renumber segments in order of first appearance.

    Returns the relabelled events and the old id of each new id. Parent
    references to segments that no longer exist become None.
    """
    events = sorted(events, key=lambda e: e.frame)
    order: List[int] = []
    for e in events:
        if e.segment not in order:
            order.append(e.segment)
    mapping = {old: new for new, old in enumerate(order)}
    relabelled = [
        replace(e, segment=mapping[e.segment],
                parent=mapping.get(e.parent) if e.parent is not None else None)
        for e in events
    ]
    return relabelled, order
