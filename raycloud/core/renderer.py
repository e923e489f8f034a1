from __future__ import annotations
from dataclasses import dataclass
import enum
from typing import Optional, Tuple, Union
import numpy as np

from .cuboid import Cuboid
from .density import DEFAULT_MIN_RAYS, DensityVolume
from .rays import ray_bounded
from .stream import RaySource, RayStream, as_stream
from .utils import get_logger

_log = get_logger()


class ViewDirection(str, enum.Enum):
    TOP = "top"
    LEFT = "left"    # facing negative x
    RIGHT = "right"  # facing positive x
    FRONT = "front"  # facing negative y
    BACK = "back"    # facing positive y


class RenderStyle(str, enum.Enum):
    ENDS = "ends"
    MEAN = "mean"
    SUM = "sum"
    STARTS = "starts"
    RAYS = "rays"
    HEIGHT = "height"
    DENSITY = "density"
    DENSITY_RGB = "density_rgb"


@dataclass(frozen=True)
class ImageFrame:
    """How a view direction maps cloud axes onto image pixels.

    ``axis`` runs along the view, ``ax1`` and ``ax2`` are the horizontal
    and vertical image axes. Where several points share a pixel the one
    with the largest ``coordinate * direction`` along ``axis`` is kept.
    """
    axis: int
    ax1: int
    ax2: int
    direction: float
    flip_x: bool
    width: int
    height: int
    depth: int
    depth_range: Tuple[float, float]

    @classmethod
    def for_view(cls, bounds: Cuboid, view: Union[ViewDirection, str], pix_width: float) -> "ImageFrame":
        view = ViewDirection(view)
        if view is ViewDirection.TOP:
            axis = 2
        elif view in (ViewDirection.FRONT, ViewDirection.BACK):
            axis = 1
        else:
            axis = 0
        ax1 = (1, 0, 0)[axis]
        ax2 = (2, 2, 1)[axis]
        extent = bounds.extent
        return cls(
            axis=axis,
            ax1=ax1,
            ax2=ax2,
            direction=-1.0 if view in (ViewDirection.LEFT, ViewDirection.FRONT) else 1.0,
            flip_x=view in (ViewDirection.LEFT, ViewDirection.BACK),
            width=1 + int(extent[ax1] / pix_width),
            height=1 + int(extent[ax2] / pix_width),
            depth=1 + int(extent[axis] / pix_width),
            depth_range=(float(bounds.min_bound[axis]), float(bounds.max_bound[axis])),
        )

    def contains(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        return (x >= 0) & (x < self.width) & (y >= 0) & (y < self.height)


def red_green_blue_gradient(shade: np.ndarray) -> np.ndarray:
    """Red at 0, green at 0.5, blue at 1; shades are clamped to [0, 1]."""
    s = np.clip(np.asarray(shade, dtype=np.float64), 0.0, 1.0)
    return np.stack([np.clip(1.0 - 2.0 * s, 0.0, 1.0), 1.0 - np.abs(2.0 * s - 1.0), np.clip(2.0 * s - 1.0, 0.0, 1.0)], axis=-1)


def red_green_blue_spectrum(value: np.ndarray) -> np.ndarray:
    """The gradient repeated over every unit of ``value``, e.g. every decade of a log scale."""
    v = np.asarray(value, dtype=np.float64)
    return red_green_blue_gradient(v - np.floor(v))


def _keep_nearest(pixels: np.ndarray, nearest: np.ndarray, idx: np.ndarray, key: np.ndarray, values: np.ndarray) -> None:
    order = np.lexsort((key, idx))
    idx, key, values = idx[order], key[order], values[order]
    last = np.ones(len(idx), dtype=bool)
    last[:-1] = idx[1:] != idx[:-1]
    idx, key, values = idx[last], key[last], values[last]
    better = key > nearest[idx]
    nearest[idx[better]] = key[better]
    pixels[idx[better]] = values[better]


def _raster_rays(
    frame: ImageFrame, bounds: Cuboid, pix_width: float, starts: np.ndarray, ends: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Approximate 2D lines: one pixel per step along each ray's long image axis.

    Returns ``(ray, x, y)``, the source ray of each drawn pixel and its coordinates.
    """
    cs, ce, valid = bounds.clip_segments(starts, ends)
    rays = np.flatnonzero(valid)
    cs, ce = cs[valid], ce[valid]
    s = (cs - bounds.min_bound) / pix_width
    e = (ce - bounds.min_bound) / pix_width
    d = ce - cs
    x_long = np.abs(d[:, frame.ax1]) > np.abs(d[:, frame.ax2])
    along = np.where(x_long, frame.ax1, frame.ax2)
    across = np.where(x_long, frame.ax2, frame.ax1)
    rows = np.arange(len(s))
    s_l, s_c, e_l, e_c = s[rows, along], s[rows, across], e[rows, along], e[rows, across]
    d_l, d_c = d[rows, along], d[rows, across]
    # iterate from low to high along the long axis
    swap = d_l < 0.0
    s_l, e_l = np.where(swap, e_l, s_l), np.where(swap, s_l, e_l)
    s_c = np.where(swap, e_c, s_c)
    gradient = np.divide(d_c, d_l, out=np.zeros(len(d_l)), where=d_l != 0.0)

    start_long = np.floor(s_l).astype(np.int64)
    end_long = np.floor(e_l).astype(np.int64)
    counts = end_long - start_long + 1
    # height of the line at the middle of each pixel along the long axis
    first = s_c + (start_long + 0.5 - s_l) * gradient
    ray = np.repeat(np.arange(len(counts)), counts)
    step = np.arange(len(ray)) - np.repeat(np.cumsum(counts) - counts, counts)
    l = start_long[ray] + step
    c = np.floor(first[ray] + step * gradient[ray]).astype(np.int64)
    long_x = x_long[ray]
    return rays[ray], np.where(long_x, l, c), np.where(long_x, c, l)


def _accumulate_rays(
    stream: RayStream, bounds: Cuboid, frame: ImageFrame, style: RenderStyle, pix_width: float
) -> Optional[np.ndarray]:
    n = frame.width * frame.height
    pixels = np.zeros((n, 4))
    nearest = np.full(n, -np.inf)

    def visit(starts, ends, times, colors) -> None:
        bounded = ray_bounded(colors)
        if not np.any(bounded):
            return
        starts, ends = starts[bounded], ends[bounded]
        rgb = colors[bounded, :3].astype(np.float64) / 255.0
        if style is RenderStyle.RAYS:
            ray, x, y = _raster_rays(frame, bounds, pix_width, starts, ends)
            keep = frame.contains(x, y)
            idx = x[keep] + frame.width * y[keep]
            np.add.at(pixels, idx, np.column_stack([rgb[ray[keep]], np.ones(len(idx))]))
            return

        points = starts if style is RenderStyle.STARTS else ends
        pos = np.floor((points - bounds.min_bound) / pix_width).astype(np.int64)
        x, y = pos[:, frame.ax1], pos[:, frame.ax2]
        keep = frame.contains(x, y)
        idx = x[keep] + frame.width * y[keep]
        if style in (RenderStyle.MEAN, RenderStyle.SUM):
            np.add.at(pixels, idx, np.column_stack([rgb[keep], np.ones(len(idx))]))
            return
        coord = points[keep, frame.axis]
        if style is RenderStyle.HEIGHT:
            values = np.column_stack([coord, coord, coord, np.ones(len(idx))])
        else:
            values = np.column_stack([rgb[keep], np.ones(len(idx))])
        _keep_nearest(pixels, nearest, idx, coord * frame.direction, values)

    if not stream.for_each_chunk(visit):
        return None
    return pixels


def _accumulate_density(
    stream: RayStream, bounds: Cuboid, frame: ImageFrame, pix_width: float, min_rays: int
) -> Optional[np.ndarray]:
    volume = DensityVolume.around(bounds, pix_width)
    if not volume.calculate_densities(stream):
        return None
    if min_rays > 0:
        volume.add_neighbour_priors(min_rays)
    # drop the padding; the remaining axes keep their order, so the sum is indexed [ax1, ax2]
    total = volume.density()[1:-1, 1:-1, 1:-1].sum(axis=frame.axis)
    return np.repeat(total.T.reshape(-1, 1), 4, axis=1)


def _finish(pixels: np.ndarray, frame: ImageFrame, style: RenderStyle, hdr: bool) -> np.ndarray:
    pixels = pixels.reshape(frame.height, frame.width, 4)
    weight = pixels[..., 3]
    covered = weight > 0.0
    max_val = 1.0
    if not hdr and np.any(covered):
        # limited range output: scale so that mean + 2 standard deviations is full brightness
        values = weight[covered]
        max_val = float(values.mean() + 2.0 * values.std())

    col = pixels[..., :3].copy()
    if style in (RenderStyle.MEAN, RenderStyle.RAYS):
        np.divide(col, weight[..., None], out=col, where=covered[..., None])
    elif style in (RenderStyle.SUM, RenderStyle.DENSITY):
        col /= max_val
    elif style is RenderStyle.DENSITY_RGB:
        density = pixels[..., 0]
        if hdr:
            col = density[..., None] * red_green_blue_spectrum(np.log10(np.maximum(density, 1e-6)))
        else:
            shade = density / max_val
            col = red_green_blue_gradient(shade)
            dim = shade < 0.05
            col[dim] *= 20.0 * shade[dim][:, None]
    elif style is RenderStyle.HEIGHT and not hdr:
        lo, hi = frame.depth_range
        span = hi - lo
        col = np.where(covered[..., None], (col - lo) / span if span > 0.0 else 1.0, 0.0)

    alpha = np.where(covered, 255, 0).astype(np.uint8)
    if frame.flip_x:
        col = col[:, ::-1]
        alpha = alpha[:, ::-1]
    if hdr:
        return np.ascontiguousarray(col, dtype=np.float32)
    image = np.empty((frame.height, frame.width, 4), dtype=np.uint8)
    image[..., :3] = np.clip(255.0 * col, 0.0, 255.0).astype(np.uint8)
    image[..., 3] = alpha
    return image


def render(
    source: Union[RaySource, RayStream],
    bounds: Cuboid,
    view: Union[ViewDirection, str],
    style: Union[RenderStyle, str],
    pix_width: float,
    hdr: bool = False,
    min_rays: int = DEFAULT_MIN_RAYS,
    chunk_size: Optional[int] = None,
) -> Optional[np.ndarray]:
    """Render the rays of ``source`` within ``bounds`` to a pixel buffer.

    Parameters
    ----------
    source:
        Ray source, read once in chunks. Unbounded rays are not drawn.
    bounds:
        Region to render, usually the bounds of the end points.
    view:
        Direction to look from (see :class:`ViewDirection`).
    style:
        What each pixel shows (see :class:`RenderStyle`). The density
        styles accumulate a :class:`~raycloud.core.density.DensityVolume`
        at ``pix_width`` and sum its densities along the view.
    pix_width:
        Pixel width in metres.
    hdr:
        Return unscaled float values for a high dynamic range image.
    min_rays:
        Neighbour prior target for the density styles; 0 disables priors.

    Returns
    -------
    numpy.ndarray or None
        ``(height, width, 4)`` uint8 RGBA, or ``(height, width, 3)`` float32
        when ``hdr``. Row 0 is the lowest row of the view, so image writers
        flip vertically. Alpha is 0 where nothing was drawn. None if the
        source could not be read.
    """
    if pix_width <= 0.0:
        raise ValueError("pix_width must be positive.")
    if bounds.is_empty():
        raise ValueError("Cannot render empty bounds.")
    style = RenderStyle(style)
    frame = ImageFrame.for_view(bounds, view, pix_width)
    _log.info("Rendering %s as a %dx%d image", style.value, frame.width, frame.height)
    stream = as_stream(source, chunk_size)
    if style in (RenderStyle.DENSITY, RenderStyle.DENSITY_RGB):
        pixels = _accumulate_density(stream, bounds, frame, pix_width, min_rays)
    else:
        pixels = _accumulate_rays(stream, bounds, frame, style, pix_width)
    if pixels is None:
        return None
    return _finish(pixels, frame, style, hdr)
