"""Region scaling, adaptive bin bounds and the flat (d, h, w) encoding.

Both operators go through these helpers so that forward selection and
backward routing agree on every coordinate.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import torch

REGION_FIELDS = 7


def round_half_away(x: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


@dataclass(frozen=True)
class RegionBox:
    """One region mapped onto the feature volume grid.

    ``start`` and ``end`` are the rounded boundaries in (z, y, x) order, not
    clamped to the volume. ``extent`` is ``max(end - start + 1, 1)`` per axis.
    """

    batch_index: int
    start: Tuple[int, int, int]
    end: Tuple[int, int, int]
    extent: Tuple[int, int, int]

    def bin_sizes(self, pooled_shape: Sequence[int]) -> Tuple[float, float, float]:
        return tuple(e / p for e, p in zip(self.extent, pooled_shape))

    def contains(self, d: int, h: int, w: int) -> bool:
        return all(s <= c <= e for s, c, e in zip(self.start, (d, h, w), self.end))


def scale_region(record: Sequence[float], scale_xy: float, scale_z: float) -> RegionBox:
    """Scale and round one ``(batch, x1, y1, z1, x2, y2, z2)`` record."""
    batch, x1, y1, z1, x2, y2, z2 = record
    start = (
        round_half_away(z1 * scale_z),
        round_half_away(y1 * scale_xy),
        round_half_away(x1 * scale_xy),
    )
    end = (
        round_half_away(z2 * scale_z),
        round_half_away(y2 * scale_xy),
        round_half_away(x2 * scale_xy),
    )
    # Malformed regions are forced to be 1 wide
    extent = tuple(max(e - s + 1, 1) for s, e in zip(start, end))
    return RegionBox(int(batch), start, end, extent)


def as_pooled_shape(pooled_shape) -> Tuple[int, int, int]:
    """``(Pd, Ph, Pw)`` from a 3-sequence or a single int for a cubic grid."""
    if isinstance(pooled_shape, int):
        return pooled_shape, pooled_shape, pooled_shape
    pooled = tuple(int(p) for p in pooled_shape)
    if len(pooled) != 3:
        raise ValueError(f"pooled_shape must have 3 entries (depth, height, width), got {pooled_shape}")
    return pooled


def bin_bounds(index: int, bin_size: float, offset: int, limit: int) -> Tuple[int, int]:
    """Input range ``[lo, hi)`` covered by pooled bin ``index`` along one axis."""
    lo = int(math.floor(index * bin_size)) + offset
    hi = int(math.ceil((index + 1) * bin_size)) + offset
    return min(max(lo, 0), limit), min(max(hi, 0), limit)


def pooled_bin_range(coord: int, start: int, bin_size: float, pooled_extent: int) -> Tuple[int, int]:
    """Pooled bins ``[lo, hi)`` whose input range may contain ``coord``."""
    lo = int(math.floor((coord - start) / bin_size))
    hi = int(math.ceil((coord - start + 1) / bin_size))
    return min(max(lo, 0), pooled_extent), min(max(hi, 0), pooled_extent)


def encode_flat(d, h, w, height: int, width: int):
    """Flat index ``d*H*W + h*W + w``; works on ints, arrays and tensors."""
    return (d * height + h) * width + w


def decode_flat(flat, height: int, width: int):
    """Inverse of :func:`encode_flat`, returns ``(d, h, w)``."""
    plane = height * width
    return flat // plane, (flat // width) % height, flat % width


def regions_as_list(regions) -> List[List[float]]:
    """Normalize a region buffer to Python float rows of 7 fields."""
    if isinstance(regions, torch.Tensor):
        rows = regions.detach().to("cpu", torch.float64).tolist()
    elif isinstance(regions, np.ndarray):
        rows = regions.astype(np.float64).tolist()
    else:
        rows = [[float(v) for v in row] for row in regions]

    if rows and not isinstance(rows[0], list):
        rows = [rows]
    for i, row in enumerate(rows):
        if len(row) != REGION_FIELDS:
            raise ValueError(
                f"region {i} has {len(row)} fields, expected {REGION_FIELDS} "
                "(batch_index, x1, y1, z1, x2, y2, z2)"
            )
    return rows
