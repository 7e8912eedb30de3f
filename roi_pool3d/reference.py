"""Element-wise reference kernels.

One unit of work computes one pooled element (forward) or one input element
(backward), exactly as a data-parallel kernel would. Units are grouped per
region (forward) or per batch x channel slab (backward) and spread over a
worker pool. Slow, only meant for parity checks on small inputs.
"""

from itertools import product
from multiprocessing import Pool, cpu_count
from typing import List, Optional, Tuple

import numpy as np
import torch
from tqdm import tqdm

from roi_pool3d.coords import (
    RegionBox,
    as_pooled_shape,
    bin_bounds,
    encode_flat,
    pooled_bin_range,
    regions_as_list,
    scale_region,
)


def _to_numpy(x) -> np.ndarray:
    if isinstance(x, torch.Tensor):
        return x.detach().cpu().numpy()
    return np.asarray(x)


def _run_units(worker, tasks: list, n_workers: Optional[int], desc: str, progress: bool) -> list:
    n_workers = n_workers or min(8, cpu_count())
    if n_workers == 1 or len(tasks) <= 1:
        return [worker(t) for t in tqdm(tasks, desc=desc, disable=not progress)]
    with Pool(n_workers) as pool:
        return list(tqdm(pool.imap(worker, tasks), total=len(tasks), desc=desc, disable=not progress))


def pool_element(feat: np.ndarray, box: RegionBox, pooled_shape, pd: int, ph: int, pw: int) -> Tuple[float, int]:
    """Max and flat index for one pooled bin of one (D, H, W) channel."""
    depth, height, width = feat.shape
    bin_d, bin_h, bin_w = box.bin_sizes(pooled_shape)
    d0, d1 = bin_bounds(pd, bin_d, box.start[0], depth)
    h0, h1 = bin_bounds(ph, bin_h, box.start[1], height)
    w0, w1 = bin_bounds(pw, bin_w, box.start[2], width)
    if d1 <= d0 or h1 <= h0 or w1 <= w0:
        return 0.0, -1

    best, best_idx = 0.0, -1
    for d in range(d0, d1):
        for h in range(h0, h1):
            for w in range(w0, w1):
                value = feat[d, h, w]
                # NaN loses to any number, so a leading NaN is replaced by the first number
                if best_idx == -1 or value > best or (np.isnan(best) and not np.isnan(value)):
                    best, best_idx = value, encode_flat(d, h, w, height, width)
    return best, best_idx


def grad_element(
    grad_output: np.ndarray,
    argmax: np.ndarray,
    boxes: List[RegionBox],
    batch_index: int,
    c: int,
    d: int,
    h: int,
    w: int,
    height: int,
    width: int,
) -> float:
    """Accumulated gradient for one input element of channel ``c``."""
    pooled_shape = grad_output.shape[2:]
    flat = encode_flat(d, h, w, height, width)
    total = 0.0
    for n, box in enumerate(boxes):
        if box.batch_index != batch_index or not box.contains(d, h, w):
            continue
        ranges = [
            range(*pooled_bin_range(coord, start, size, extent))
            for coord, start, size, extent in zip(
                (d, h, w), box.start, box.bin_sizes(pooled_shape), pooled_shape
            )
        ]
        for pd, ph, pw in product(*ranges):
            if argmax[n, c, pd, ph, pw] == flat:
                total += float(grad_output[n, c, pd, ph, pw])
    return total


def _forward_region(args):
    feat, box, pooled_shape = args
    channels = feat.shape[0]
    values = np.zeros((channels,) + tuple(pooled_shape), dtype=np.float64)
    indices = np.full((channels,) + tuple(pooled_shape), -1, dtype=np.int64)
    for c, pd, ph, pw in product(range(channels), *(range(p) for p in pooled_shape)):
        values[c, pd, ph, pw], indices[c, pd, ph, pw] = pool_element(feat[c], box, pooled_shape, pd, ph, pw)
    return values, indices


def _backward_slab(args):
    grad_output, argmax, boxes, batch_index, c, dims = args
    depth, height, width = dims
    slab = np.zeros(dims, dtype=np.float64)
    for d, h, w in product(range(depth), range(height), range(width)):
        slab[d, h, w] = grad_element(grad_output, argmax, boxes, batch_index, c, d, h, w, height, width)
    return slab


def reference_forward(
    volume,
    regions,
    scale_xy: float,
    scale_z: float,
    pooled_shape,
    n_workers: Optional[int] = 1,
    progress: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    """Element-wise forward pooling; returns (output, argmax) as NumPy arrays."""
    volume = _to_numpy(volume)
    pooled_shape = as_pooled_shape(pooled_shape)
    boxes = [scale_region(row, scale_xy, scale_z) for row in regions_as_list(regions)]
    # Regions pointing outside the batch stay empty
    kept = [n for n, box in enumerate(boxes) if 0 <= box.batch_index < volume.shape[0]]
    tasks = [(volume[boxes[n].batch_index], boxes[n], pooled_shape) for n in kept]

    results = _run_units(_forward_region, tasks, n_workers, "Reference forward", progress)

    channels = volume.shape[1]
    output = np.zeros((len(boxes), channels) + pooled_shape, dtype=volume.dtype)
    argmax = np.full(output.shape, -1, dtype=np.int64)
    for n, (values, indices) in zip(kept, results):
        output[n] = values
        argmax[n] = indices
    return output, argmax


def reference_backward(
    grad_output,
    argmax,
    regions,
    scale_xy: float,
    scale_z: float,
    volume_shape,
    n_workers: Optional[int] = 1,
    progress: bool = False,
) -> np.ndarray:
    """Element-wise backward accumulation; returns the input gradient."""
    grad_output = _to_numpy(grad_output)
    argmax = _to_numpy(argmax)
    batch, channels, depth, height, width = (int(s) for s in volume_shape)
    boxes = [scale_region(row, scale_xy, scale_z) for row in regions_as_list(regions)]
    tasks = [
        (grad_output, argmax, boxes, b, c, (depth, height, width))
        for b, c in product(range(batch), range(channels))
    ]

    slabs = _run_units(_backward_slab, tasks, n_workers, "Reference backward", progress)

    grad_input = np.zeros((batch, channels, depth, height, width), dtype=grad_output.dtype)
    for (b, c), slab in zip(product(range(batch), range(channels)), slabs):
        grad_input[b, c] = slab
    return grad_input
