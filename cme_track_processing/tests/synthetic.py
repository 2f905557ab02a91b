"""
Synthetic tracker output, detection tables, tracks and movies for the tests
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from cme_track_processing.config import MovieData
from cme_track_processing.loader import ArrayFrameSource, DetectionFrame
from cme_track_processing.segment_graph import COORD_AMP_STRIDE, CompoundTrack
from cme_track_processing.track import Track, Visibility

SIGMA = 1.0
IMAGE_SIZE = (41, 41)
MOVIE_LENGTH = 30

DETECTION_DEFAULTS = {
    'A': 100.0, 'c': 10.0, 'A_pstd': 2.0, 'c_pstd': 0.5,
    'sigma_r': 2.0, 'SE_sigma_r': 0.2, 'pval_Ar': 0.0, 'hval_AD': 0.0,
}


def coord_amp_matrix(x: np.ndarray, y: np.ndarray, amplitude: float = 100.0) -> np.ndarray:
    """(nSeg, 8*nFrames) matrix with x, y and A filled; NaN where x is NaN"""
    x = np.atleast_2d(np.asarray(x, dtype=float))
    y = np.atleast_2d(np.asarray(y, dtype=float))
    coord = np.full((x.shape[0], COORD_AMP_STRIDE * x.shape[1]), np.nan)
    coord[:, 0::COORD_AMP_STRIDE] = x
    coord[:, 1::COORD_AMP_STRIDE] = y
    coord[:, 3::COORD_AMP_STRIDE] = np.where(np.isnan(x), np.nan, amplitude)
    return coord


def compound_track(seq: Sequence[Sequence[float]], feat_indx, x, y) -> CompoundTrack:
    """Compound track from a 1-based event table and (nSeg, nFrames) matrices"""
    return CompoundTrack.from_seq_of_events(np.array(seq, dtype=float), np.array(feat_indx),
                                            coord_amp_matrix(x, y))


def single_track(start: int, end: int, x: float = 20.0, y: float = 20.0,
                 gaps: Sequence[int] = (), first_index: int = 1) -> CompoundTrack:
    """Single-segment compound track at a fixed position; gaps are movie frames"""
    n = end - start + 1
    feat = np.arange(first_index, first_index + n)[np.newaxis]
    xs = np.full((1, n), x)
    ys = np.full((1, n), y)
    for g in gaps:
        feat[0, g - start] = 0
        xs[0, g - start] = np.nan
        ys[0, g - start] = np.nan
    return compound_track([[start, 1, 1, np.nan], [end, 2, 1, np.nan]], feat, xs, ys)


class DetectionBuilder:
    """Collects detections per movie frame and assigns 1-based indices"""

    def __init__(self, movie_length: int, n_channels: int = 1, sigma: float = SIGMA):
        self.movie_length = movie_length
        self.n_channels = n_channels
        self.sigma = sigma
        self.entries: Dict[int, List[Dict[str, float]]] = {f: [] for f in range(1, movie_length + 1)}

    def add(self, frame: int, x: float, y: float, **values) -> int:
        entry = dict(DETECTION_DEFAULTS, x=x, y=y)
        entry.update(values)
        self.entries[frame].append(entry)
        return len(self.entries[frame])

    def add_track(self, start: int, end: int, x: float, y: float, gaps: Sequence[int] = (),
                  **values) -> np.ndarray:
        """Detections along a track; returns the (1, nFrames) feature index row"""
        feat = np.zeros((1, end - start + 1), dtype=int)
        for f in range(start, end + 1):
            if f in gaps:
                continue
            feat[0, f - start] = self.add(f, x, y, **values)
        return feat

    def build(self) -> List[DetectionFrame]:
        frames = []
        names = ['x', 'y'] + list(DETECTION_DEFAULTS)
        for f in range(1, self.movie_length + 1):
            values = {}
            for name in names:
                row = np.array([e[name] for e in self.entries[f]], dtype=float)
                values[name] = np.tile(row, (self.n_channels, 1)).reshape(self.n_channels, -1)
            frames.append(DetectionFrame(values=values, sigma=np.full(self.n_channels, self.sigma)))
        return frames


def make_track(x, y=None, A=None, c=None, n_seg: int = 1, start: int = 10,
               visibility: Visibility = Visibility.COMPLETE, framerate: float = 1.0,
               seam_slots: Sequence[int] = (), extra: Optional[Dict[str, np.ndarray]] = None) -> Track:
    """Flattened single-channel track from per-slot values (NaN = missing)"""
    x = np.atleast_2d(np.asarray(x, dtype=float))
    n = x.shape[1]
    y = np.atleast_2d(np.asarray(y if y is not None else np.where(np.isnan(x), np.nan, 20.0), dtype=float))
    A = np.atleast_2d(np.asarray(A if A is not None else np.where(np.isnan(x), np.nan, 100.0), dtype=float))
    c = np.atleast_2d(np.asarray(c if c is not None else np.where(np.isnan(x), np.nan, 10.0), dtype=float))
    fields = {'x': x, 'y': y, 'A': A, 'c': c}
    if extra:
        fields.update({k: np.atleast_2d(np.asarray(v, dtype=float)) for k, v in extra.items()})
    seam = np.zeros(n, dtype=bool)
    seam[list(seam_slots)] = True
    end = start + n - 1
    frames = np.arange(start, end + 1, dtype=float)
    return Track(
        n_seg=n_seg, start=start, end=end, lifetime_s=n * framerate, visibility=visibility,
        t=(frames - 1) * framerate, f=frames, fields=fields, seam_mask=seam,
    )


def render_frame(spots: Sequence[Tuple[float, float, float]], image_size=IMAGE_SIZE,
                 background: float = 10.0, sigma: float = SIGMA,
                 rng: Optional[np.random.Generator] = None, noise: float = 2.0) -> np.ndarray:
    """Image with Gaussian spots (x, y, A) at 1-based positions plus background and noise"""
    ny, nx = image_size
    yy, xx = np.mgrid[1:ny + 1, 1:nx + 1]
    image = np.full(image_size, background, dtype=float)
    for x, y, a in spots:
        image += a * np.exp(-((xx - x) ** 2 + (yy - y) ** 2) / (2 * sigma ** 2))
    if rng is not None:
        image += rng.normal(0, noise, size=image_size)
    return image


def synthetic_movie(source: str = "/tmp/cme_synthetic_movie"):
    """
    Three tracks in a 30-frame movie plus one single-frame track:

    - complete single track, frames 8-22 at (20, 20), missed detection at frame 15
    - persistent track, frames 1-30 at (10, 30)
    - track at (39, 20), frames 5-12, too close to the right border
    - single-frame track at frame 3

    Returns:
        movie, tracker output, detection tables, frame source
    """
    rng = np.random.default_rng(7)
    builder = DetectionBuilder(MOVIE_LENGTH)
    spots = {f: [] for f in range(1, MOVIE_LENGTH + 1)}

    feat1 = builder.add_track(8, 22, 20.0, 20.0, gaps=(15,))
    feat2 = builder.add_track(1, 30, 10.0, 30.0)
    feat3 = builder.add_track(5, 12, 39.0, 20.0)
    feat4 = builder.add_track(3, 3, 30.0, 10.0)
    for f in range(8, 23):
        spots[f].append((20.0, 20.0, 100.0))
    for f in range(1, 31):
        spots[f].append((10.0, 30.0, 100.0))
    for f in range(5, 13):
        spots[f].append((39.0, 20.0, 100.0))
    spots[3].append((30.0, 10.0, 100.0))

    def xy(feat, x, y):
        xs = np.where(feat > 0, x, np.nan)
        ys = np.where(feat > 0, y, np.nan)
        return xs, ys

    tracks = [
        compound_track([[8, 1, 1, np.nan], [22, 2, 1, np.nan]], feat1, *xy(feat1, 20.0, 20.0)),
        compound_track([[1, 1, 1, np.nan], [30, 2, 1, np.nan]], feat2, *xy(feat2, 10.0, 30.0)),
        compound_track([[5, 1, 1, np.nan], [12, 2, 1, np.nan]], feat3, *xy(feat3, 39.0, 20.0)),
        compound_track([[3, 1, 1, np.nan], [3, 2, 1, np.nan]], feat4, *xy(feat4, 30.0, 10.0)),
    ]

    frames = np.stack([render_frame(spots[f], rng=rng) for f in range(1, MOVIE_LENGTH + 1)])
    movie = MovieData(source=source, framerate=1.0, movie_length=MOVIE_LENGTH, image_size=IMAGE_SIZE)
    return movie, tracks, builder.build(), ArrayFrameSource(frames)
