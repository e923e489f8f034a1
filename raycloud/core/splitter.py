from __future__ import annotations
import math
from typing import Callable, Dict, Optional, Tuple, Union
import numpy as np

from .cloud import Cloud
from .progress import Progress
from .rays import RayBatch
from .stream import RaySink, RaySource, RayStream, as_stream
from .utils import as_vector, get_logger

_log = get_logger()

BatchPredicate = Callable[[RayBatch], np.ndarray]
Cell = Tuple[int, int, int]


def split_stream(
    source: Union[RaySource, RayStream],
    predicate: BatchPredicate,
    inside_sink: RaySink,
    outside_sink: RaySink,
    progress: Optional[Progress] = None,
    chunk_size: Optional[int] = None,
) -> Optional[Tuple[int, int]]:
    """Route every ray of ``source`` to one of two sinks, chunk by chunk.

    Rays where ``predicate`` is False go to ``inside_sink``, True to
    ``outside_sink``. Returns the two counts, or None if the source failed.
    Both sinks are closed either way.
    """
    counts = [0, 0]
    if progress is not None:
        progress.begin("split")

    def visit(starts, ends, times, colors) -> None:
        batch = RayBatch(starts=starts, ends=ends, times=times, colors=colors)
        mask = np.asarray(predicate(batch), dtype=bool)
        if mask.shape != (len(batch),):
            raise ValueError(f"Split predicate returned shape {mask.shape} for {len(batch)} rays")
        inside_sink.write_batch(batch.take(~mask))
        outside_sink.write_batch(batch.take(mask))
        counts[0] += int(np.count_nonzero(~mask))
        counts[1] += int(np.count_nonzero(mask))
        if progress is not None:
            progress.increment(len(batch))

    try:
        ok = as_stream(source, chunk_size).for_each_chunk(visit)
    finally:
        inside_sink.close()
        outside_sink.close()
    if not ok:
        return None
    _log.info("Split %d rays: %d inside, %d outside", counts[0] + counts[1], counts[0], counts[1])
    return counts[0], counts[1]


def _grid_cells(ends: np.ndarray, widths: np.ndarray, overlap: float) -> Dict[Cell, np.ndarray]:
    """Map cell -> indices of the end points it receives."""
    active = widths > 0.0
    safe = np.where(active, widths, 1.0)
    base = np.where(active, np.floor(ends / safe), 0.0).astype(np.int64)
    if overlap <= 0.0:
        uniq, inverse = np.unique(base, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        return {tuple(int(c) for c in cell): np.flatnonzero(inverse == k) for k, cell in enumerate(uniq)}

    # a cell grown by the overlap can also claim points just past its faces
    out: Dict[Cell, list] = {}
    reach = np.where(active, np.ceil(overlap / safe), 0.0).astype(np.int64)
    offsets = np.array(
        [(x, y, z)
         for x in range(-reach[0], reach[0] + 1)
         for y in range(-reach[1], reach[1] + 1)
         for z in range(-reach[2], reach[2] + 1)],
        dtype=np.int64,
    )
    for off in offsets:
        cells = base + off
        lo = cells * safe - overlap
        hi = (cells + 1) * safe + overlap
        inside = np.all(~active | ((ends >= lo) & (ends <= hi)), axis=1)
        for i in np.flatnonzero(inside):
            out.setdefault(tuple(int(c) for c in cells[i]), []).append(int(i))
    return {cell: np.sort(np.asarray(idx, dtype=np.int64)) for cell, idx in out.items()}


def split_grid(
    source: Union[RaySource, RayStream],
    cell_width: Union[float, Tuple[float, float, float]],
    overlap: float = 0.0,
    period: float = 0.0,
    chunk_size: Optional[int] = None,
) -> Optional[Dict[Tuple[int, ...], Cloud]]:
    """Partition rays into a grid of cells by end point.

    Cell ``(i, j, k)`` covers ``[i*wx, (i+1)*wx)`` and so on; a zero width
    leaves that axis unsplit (index 0). With ``overlap`` > 0 each cell is
    grown by that distance and a ray goes to every cell containing its end.
    A positive ``period`` adds a fourth, time index ``floor(time / period)``.
    Returns None if the source failed.
    """
    widths = np.broadcast_to(np.asarray(cell_width, dtype=np.float64), (3,)).copy()
    if np.any(widths < 0.0) or period < 0.0 or not (np.any(widths > 0.0) or period > 0.0):
        raise ValueError(f"cell_width and period must be non-negative with at least one positive, got {widths}, {period}")
    if overlap < 0.0:
        raise ValueError("overlap must be non-negative.")
    parts: Dict[Tuple[int, ...], list] = {}

    def visit(starts, ends, times, colors) -> None:
        batch = RayBatch(starts=starts, ends=ends, times=times, colors=colors)
        for cell, idx in _grid_cells(batch.ends, widths, overlap).items():
            if period <= 0.0:
                parts.setdefault(cell, []).append(batch.take(idx))
                continue
            slots = np.floor(batch.times[idx] / period).astype(np.int64)
            for slot in np.unique(slots):
                parts.setdefault(cell + (int(slot),), []).append(batch.take(idx[slots == slot]))

    if not as_stream(source, chunk_size).for_each_chunk(visit):
        return None
    clouds = {cell: Cloud(RayBatch.concatenate(batches)) for cell, batches in sorted(parts.items())}
    _log.info(
        "Split into %d grid cells of width %s%s", len(clouds), tuple(float(w) for w in widths),
        f" and period {period:g} s" if period > 0.0 else "",
    )
    return clouds


def split_colours(
    source: Union[RaySource, RayStream],
    chunk_size: Optional[int] = None,
) -> Optional[Dict[Tuple[int, int, int], Cloud]]:
    """One cloud per distinct RGB colour, keyed by ``(red, green, blue)``. None if the source failed."""
    parts: Dict[Tuple[int, int, int], list] = {}

    def visit(starts, ends, times, colors) -> None:
        batch = RayBatch(starts=starts, ends=ends, times=times, colors=colors)
        uniq, inverse = np.unique(batch.colors[:, :3], axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        for k, rgb in enumerate(uniq):
            key = (int(rgb[0]), int(rgb[1]), int(rgb[2]))
            parts.setdefault(key, []).append(batch.take(np.flatnonzero(inverse == k)))

    if not as_stream(source, chunk_size).for_each_chunk(visit):
        return None
    clouds = {rgb: Cloud(RayBatch.concatenate(batches)) for rgb, batches in sorted(parts.items())}
    _log.info("Split into %d colours", len(clouds))
    return clouds


# -- predicates; True sends a ray to the second output --
def plane_predicate(plane: np.ndarray) -> BatchPredicate:
    """Beyond the plane through ``plane`` with normal along ``plane``."""
    p = as_vector(plane)
    return lambda batch: batch.ends @ p > float(p @ p)


def time_predicate(threshold: float) -> BatchPredicate:
    return lambda batch: batch.times > threshold


def alpha_predicate(alpha: float) -> BatchPredicate:
    """Alpha above ``alpha`` (0..1); ``0.0`` separates unbounded rays from bounded ones."""
    return lambda batch: batch.colors[:, 3] > 255.0 * alpha


def range_predicate(length: float) -> BatchPredicate:
    """Rays longer than ``length``."""
    return lambda batch: np.linalg.norm(batch.ends - batch.starts, axis=1) > length


def raydir_predicate(direction: np.ndarray) -> BatchPredicate:
    """Unit ray direction projected on ``direction`` exceeds its squared length."""
    d = as_vector(direction)

    def predicate(batch: RayBatch) -> np.ndarray:
        rays = batch.ends - batch.starts
        norms = np.linalg.norm(rays, axis=1)
        dots = np.divide(rays @ d, norms, out=np.zeros(len(rays)), where=norms > 0.0)
        return dots > float(d @ d)
    return predicate


def box_predicate(centre: np.ndarray, radius: np.ndarray) -> BatchPredicate:
    """End point outside the axis-aligned box ``centre +- radius``."""
    c, r = as_vector(centre), as_vector(radius)
    return lambda batch: np.any(np.abs(batch.ends - c) > r, axis=1)


def tube_predicate(start: np.ndarray, end: np.ndarray, radius: float) -> BatchPredicate:
    """End point outside the cylinder of ``radius`` around start->end."""
    a, b = as_vector(start), as_vector(end)
    axis = b - a
    length_sqr = float(axis @ axis)
    if length_sqr == 0.0:
        raise ValueError("Tube start and end must differ.")

    def predicate(batch: RayBatch) -> np.ndarray:
        t = (batch.ends - a) @ axis / length_sqr
        radial = batch.ends - (a + t[:, None] * axis)
        return (t < 0.0) | (t > 1.0) | (np.einsum("ij,ij->i", radial, radial) > radius * radius)
    return predicate


def time_percent_threshold(source: Union[RaySource, RayStream], percent: float) -> Optional[float]:
    """Time stamp ``percent`` of the way through the source's time span."""
    span = [math.inf, -math.inf]

    def visit(starts, ends, times, colors) -> None:
        if len(times):
            span[0] = min(span[0], float(times.min()))
            span[1] = max(span[1], float(times.max()))

    if not as_stream(source).for_each_chunk(visit) or span[0] > span[1]:
        return None
    threshold = span[0] + (span[1] - span[0]) * percent / 100.0
    _log.info("Splitting at %g s into the %g s period of the cloud", threshold - span[0], span[1] - span[0])
    return threshold


def colour_predicate(colour: np.ndarray) -> BatchPredicate:
    """RGB (0..1) projected on ``colour`` exceeds its squared length, e.g. ``(0.5, 0, 0)`` splits at half red."""
    c = as_vector(colour)
    norm_sqr = float(c @ c)
    if norm_sqr == 0.0:
        raise ValueError("Split colour must be non-zero.")
    vec = c / norm_sqr
    return lambda batch: (batch.colors[:, :3] / 255.0) @ vec > 1.0


def single_colour_predicate(colour: Tuple[int, int, int]) -> BatchPredicate:
    """Rays not of exactly ``colour`` (0..255), so that colour goes to the first output."""
    rgb = np.asarray(colour, dtype=np.int64).reshape(3)
    if np.any((rgb < 0) | (rgb > 255)):
        raise ValueError(f"Colour components must be in 0..255, got {tuple(rgb)}")
    return lambda batch: np.any(batch.colors[:, :3].astype(np.int64) != rgb, axis=1)
