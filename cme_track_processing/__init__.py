"""
cme_track_processing

Conversion of tracker output into curated, classified tracks of
diffraction-limited fluorescent structures (e.g. clathrin-coated pits).

Copyright (C) 2025, Danuser Lab - UTSouthwestern
"""

__version__ = "1.0.0"

from .config import (
    ConfigurationError, LoggingConfig, MovieData, ProcessingConfig,
    load_config, load_movie_list, save_config
)
from .segment_graph import CompoundTrack, EventType, TopologyError, TrackEvent
from .track import BufferReadout, GapStatus, MotionAnalysis, Track, Visibility
from .loader import (
    ArrayFrameSource, DetectionFrame, FileFrameSource, FrameSource, load_detection, load_tracker_output
)
from .topology import merge_overlapping_segments, normalize_topology
from .flatten import flatten_tracks, reject_border_tracks
from .gaps import process_gaps
from .buffer_estimation import estimate_at_position, estimate_tracks
from .classification import CategoryStateMachine, TrackCategory, classify_tracks
from .motion import compute_motion_statistics
from .pipeline import ProcessingInfo, load_results, process_movie, run_track_processing, save_results

__all__ = [
    'ConfigurationError', 'LoggingConfig', 'MovieData', 'ProcessingConfig',
    'load_config', 'load_movie_list', 'save_config',
    'CompoundTrack', 'EventType', 'TopologyError', 'TrackEvent',
    'BufferReadout', 'GapStatus', 'MotionAnalysis', 'Track', 'Visibility',
    'ArrayFrameSource', 'DetectionFrame', 'FileFrameSource', 'FrameSource',
    'load_detection', 'load_tracker_output',
    'merge_overlapping_segments', 'normalize_topology',
    'flatten_tracks', 'reject_border_tracks',
    'process_gaps',
    'estimate_at_position', 'estimate_tracks',
    'CategoryStateMachine', 'TrackCategory', 'classify_tracks',
    'compute_motion_statistics',
    'ProcessingInfo', 'load_results', 'process_movie', 'run_track_processing', 'save_results',
]
