#!/usr/bin/env python3
"""
Command line entry point

    python -m cme_track_processing movies.yaml [-c config.yaml] [--overwrite]
                                   [--n-jobs N] [--log-dir DIR]

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

import argparse
import sys

from .config import ConfigurationError, LoggingConfig, ProcessingConfig, load_config, load_movie_list
from .module_logger import TrackLogger
from .pipeline import run_track_processing


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cme_track_processing',
        description='Convert tracker output into classified CME tracks')
    parser.add_argument('movies', help='YAML file listing the movies to process')
    parser.add_argument('-c', '--config', help='YAML configuration file')
    parser.add_argument('--overwrite', action='store_true', help='Reprocess movies with existing results')
    parser.add_argument('--n-jobs', type=int, help='Number of movies processed in parallel (-1: all cores)')
    parser.add_argument('--log-dir', help='Directory for log files')
    parser.add_argument('-v', '--verbose', action='store_true', help='Show progress bars')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.config:
            config, logging_config = load_config(args.config)
        else:
            config, logging_config = ProcessingConfig(), LoggingConfig()

        if args.overwrite:
            config.overwrite = True
        if args.n_jobs is not None:
            config.n_jobs = args.n_jobs
        if args.log_dir:
            logging_config.log_directory = args.log_dir

        TrackLogger.configure(log_dir=logging_config.log_directory,
                              level=logging_config.level_number(),
                              console_output=logging_config.console_output)
        movies = load_movie_list(args.movies)
        results = run_track_processing(movies, config, verbose=args.verbose)
    except (ConfigurationError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    n_done = sum(r is not None for r in results)
    print(f"Processed {n_done}/{len(movies)} movie(s); logs in {TrackLogger.get_log_directory()}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
