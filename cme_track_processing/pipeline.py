#!/usr/bin/env python3
"""
Track processing pipeline

Per movie, strictly in this order:

1. load tracker output and detection results (movie skipped if missing)
2. preprocessing: remove single-frame tracks, fuse overlapping segments
3. flatten compound tracks, reject tracks at the image border
4. classify and interpolate gaps
5. re-estimate valid gaps and buffers from the raw frames
6. post-processing: category assignment and validation, motion statistics
7. optional slave-channel report, save

Movies are independent and processed in parallel with joblib.

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

import pickle
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from joblib import Parallel, delayed

from .buffer_estimation import estimate_tracks
from .classification import ClassificationParameters, TrackCategory, classify_tracks
from .config import ConfigurationError, MovieData, ProcessingConfig
from .flatten import FlattenParameters, flatten_tracks, reject_border_tracks
from .gaps import process_gaps
from .loader import (
    DetectionFrame, FileFrameSource, FrameSource, find_input_file, load_detection, load_tracker_output
)
from .module_logger import LoggingMixin, get_module_logger, log_array_info
from .motion import compute_motion_statistics
from .segment_graph import CompoundTrack
from .topology import normalize_topology
from .track import Track

logger = get_module_logger('pipeline')

# slave_classifier(movie, tracks, amplitude_ratio) -> (significant_master, significant_slave),
# both boolean arrays of shape (nTracks, nCh)
SlaveClassifier = Callable[[MovieData, List[Track], float], Tuple[np.ndarray, np.ndarray]]


@dataclass
class ProcessingInfo:
    """Summary of one movie's processing, saved with the tracks"""
    proc_flag: Tuple[bool, bool]  # (preprocess, postprocess)
    lft_hists: Dict[str, Dict[int, np.ndarray]] = field(default_factory=dict)  # 'before'/'after' rescue
    category_counts: Dict[int, int] = field(default_factory=dict)
    transitions: Dict[str, int] = field(default_factory=dict)
    n_split: int = 0
    slave_summary: Dict[int, Dict[str, float]] = field(default_factory=dict)


def save_results(filepath: Union[str, Path], tracks: List[Track], info: ProcessingInfo) -> None:
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, 'wb') as f:
        pickle.dump({'tracks': tracks, 'processing_info': info}, f)
    logger.info(f"Saved {len(tracks)} tracks to {filepath}")


def load_results(filepath: Union[str, Path]) -> Tuple[List[Track], ProcessingInfo]:
    with open(filepath, 'rb') as f:
        data = pickle.load(f)
    return data['tracks'], data['processing_info']


def track_field_names(detection: Sequence[DetectionFrame]) -> List[str]:
    """Per-detection fields present in the detection results, in first-seen order"""
    names = []
    for frame_info in detection:
        for name in frame_info.track_field_names():
            if name not in names:
                names.append(name)
    return names


def category_counts(tracks: List[Track]) -> Dict[int, int]:
    counts = Counter(int(t.cat_idx) for t in tracks if t.cat_idx is not None)
    return {int(c): counts.get(int(c), 0) for c in TrackCategory}


class MovieProcessor(LoggingMixin):
    """Runs the processing stages on one movie at a time"""

    def __init__(self, config: ProcessingConfig, slave_classifier: Optional[SlaveClassifier] = None,
                 verbose: bool = False):
        super().__init__()
        self.config = config
        self.slave_classifier = slave_classifier
        self.verbose = verbose

    def output_path(self, movie: MovieData) -> Path:
        return movie.tracking_dir / self.config.file_name

    def _load_inputs(self, movie: MovieData):
        tracker_path = find_input_file(movie.tracking_dir, self.config.tracker_output)
        if tracker_path is None:
            self.logger.warning(f"No tracking data found for {movie.short_path}")
            return None
        detection_path = find_input_file(movie.detection_dir, self.config.detection_file)
        if detection_path is None:
            self.logger.warning(f"No detection data found for {movie.short_path}")
            return None
        try:
            return load_tracker_output(tracker_path), load_detection(detection_path)
        except (KeyError, ValueError, OSError) as e:
            self.logger.warning(f"Could not read inputs of {movie.short_path}: {e}")
            return None

    def process(self, movie: MovieData, movie_index: int = 0,
                tracker_output: Optional[List[CompoundTrack]] = None,
                detection: Optional[List[DetectionFrame]] = None,
                frame_source: Optional[FrameSource] = None,
                save: bool = True) -> Optional[Tuple[List[Track], ProcessingInfo]]:
        """
        Process one movie.

        Inputs not passed in are read from <source>/Tracking and
        <source>/Detection. Returns None if an input is missing.
        """
        cfg = self.config
        movie.validate()
        out_path = self.output_path(movie)
        if save and out_path.exists() and not cfg.overwrite:
            self.logger.info(f"Tracks from {movie.short_path} have already been processed")
            return load_results(out_path)

        if tracker_output is None or detection is None:
            inputs = self._load_inputs(movie)
            if inputs is None:
                return None
            tracker_output = tracker_output if tracker_output is not None else inputs[0]
            detection = detection if detection is not None else inputs[1]
        if not detection:
            self.logger.warning(f"Detection data for {movie.short_path} is empty")
            return None
        if frame_source is None:
            frame_source = FileFrameSource(movie)

        master = movie.master_channel
        sigma = detection[0].sigma
        frames = cfg.frames_for(movie_index, movie.movie_length)
        self.log_parameters({
            'source': movie.source,
            'channels': movie.n_channels,
            'master channel': master,
            'framerate': movie.framerate,
            'movie length': movie.movie_length,
            'buffer': cfg.buffer,
            'preprocess': cfg.preprocess,
            'postprocess': cfg.postprocess,
        }, context=movie.short_path)
        log_array_info(self.logger, 'sigma', sigma)

        with self.time_operation(f"Processing {movie.short_path}"):
            if cfg.preprocess:
                tracker_output = normalize_topology(tracker_output)

            params = FlattenParameters(
                frames=frames,
                framerate=movie.framerate,
                movie_length=movie.movie_length,
                buffer=cfg.buffer,
                buffer_all=cfg.buffer_all,
                preprocess=cfg.preprocess,
                n_channels=detection[0].n_channels,
                field_names=track_field_names(detection),
            )
            tracks = flatten_tracks(tracker_output, detection, params, verbose=self.verbose)
            tracks = reject_border_tracks(tracks, movie.image_size, float(sigma[min(master, sigma.size - 1)]))
            tracks = process_gaps(tracks, master)
            tracks = estimate_tracks(tracks, frame_source, sigma, cfg.k_level, master, verbose=self.verbose)

            info = ProcessingInfo(proc_flag=(cfg.preprocess, cfg.postprocess))
            if cfg.postprocess:
                class_params = ClassificationParameters(
                    master=master,
                    framerate=movie.framerate,
                    movie_length=movie.movie_length,
                    cohort_bounds_s=cfg.cohort_bounds_s,
                    force_diffraction_limited=cfg.force_diffraction_limited,
                )
                tracks, ctx = classify_tracks(tracks, class_params)
                info.lft_hists = {'before': ctx.lft_hists_before, 'after': ctx.lft_hists_after}
                info.transitions = dict(ctx.machine.counts())
                info.n_split = ctx.n_split
                tracks = compute_motion_statistics(tracks, master, verbose=self.verbose)
                info.category_counts = category_counts(tracks)

            if movie.n_channels > 1 and self.slave_classifier is not None:
                info.slave_summary = self.report_slave_channels(movie, tracks, master)

        n_valid = sum(t.cat_idx == TrackCategory.SINGLE_VALID for t in tracks)
        self.logger.info(f"Processing for {movie.short_path} complete - valid/total tracks: "
                         f"{n_valid}/{len(tracks)}")
        if save:
            save_results(out_path, tracks, info)
        return tracks, info

    def report_slave_channels(self, movie: MovieData, tracks: List[Track], master: int) -> Dict[int, Dict[str, float]]:
        """Fraction of valid tracks significant in each slave channel"""
        sig_master, sig_slave = self.slave_classifier(movie, tracks, self.config.slave_amplitude_ratio)
        sig_master = np.asarray(sig_master, dtype=bool)
        sig_slave = np.asarray(sig_slave, dtype=bool)
        idx = np.array([t.cat_idx == TrackCategory.SINGLE_VALID
                        and t.lifetime_s >= movie.framerate * self.config.cutoff_f for t in tracks], dtype=bool)
        n_valid = int(idx.sum())
        summary = {}
        for c in range(movie.n_channels):
            if c == master or n_valid == 0:
                continue
            n_pos_m = int(sig_master[idx, c].sum())
            n_pos_s = int(sig_slave[idx, c].sum())
            summary[c] = {'master': n_pos_m / n_valid, 'slave': n_pos_s / n_valid}
            self.logger.info(f"Ch. {c} positive tracks as master: {100 * n_pos_m / n_valid:.2f} % "
                             f"({n_pos_m}/{n_valid} valid, {len(tracks)} total)")
            self.logger.info(f"Ch. {c} positive tracks as slave:  {100 * n_pos_s / n_valid:.2f} % "
                             f"({n_pos_s}/{n_valid} valid, {len(tracks)} total)")
        return summary


def process_movie(movie: MovieData, config: ProcessingConfig, movie_index: int = 0,
                  tracker_output: Optional[List[CompoundTrack]] = None,
                  detection: Optional[List[DetectionFrame]] = None,
                  frame_source: Optional[FrameSource] = None,
                  slave_classifier: Optional[SlaveClassifier] = None,
                  save: bool = True, verbose: bool = False):
    """Process one movie; see MovieProcessor.process"""
    processor = MovieProcessor(config, slave_classifier=slave_classifier, verbose=verbose)
    return processor.process(movie, movie_index, tracker_output, detection, frame_source, save)


def run_track_processing(movies: Sequence[MovieData], config: ProcessingConfig,
                         n_jobs: Optional[int] = None, verbose: bool = False) -> List:
    """
    Process a batch of movies in parallel.

    Configuration and movie descriptions are validated before any movie is
    processed. Returns one (tracks, info) tuple per movie, None for skipped
    movies.
    """
    config.validate()
    for movie in movies:
        movie.validate()
    if config.frames is not None and len(config.frames) != len(movies):
        raise ConfigurationError(f"{len(config.frames)} frame lists for {len(movies)} movies")

    n_jobs = config.n_jobs if n_jobs is None else n_jobs
    logger.info(f"Processing {len(movies)} movie(s) with n_jobs={n_jobs}")
    results = Parallel(n_jobs=n_jobs)(
        delayed(process_movie)(movie, config, i, verbose=verbose) for i, movie in enumerate(movies)
    )
    n_done = sum(r is not None for r in results)
    logger.info(f"Processed {n_done}/{len(movies)} movie(s)")
    return results
