"""3D ROI adaptive max pooling: forward selection and backward routing."""

import logging
from itertools import product
from typing import Sequence, Tuple

import torch

from roi_pool3d.coords import (
    as_pooled_shape,
    bin_bounds,
    decode_flat,
    encode_flat,
    regions_as_list,
    scale_region,
)

logger = logging.getLogger(__name__)


def select_max(window: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Row-wise max of a (C, K) window with a strict ``>`` scan over K.

    NaN never beats a number (not even -inf), ties keep the first index, and
    an all-NaN row selects its first element.

    Returns:
        values (C,) read from ``window`` and local indices (C,)
    """
    valid = ~torch.isnan(window)
    scan = torch.where(valid, window, torch.full_like(window, float("-inf")))
    best = scan.max(dim=1).values
    hits = valid & (window == best.unsqueeze(1))
    local = hits.to(torch.int64).argmax(dim=1)
    values = window.gather(1, local.unsqueeze(1)).squeeze(1)
    return values, local


@torch.no_grad()
def roi_pool3d_forward(
    volume: torch.Tensor,
    regions,
    scale_xy: float,
    scale_z: float,
    pooled_shape,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Pool every region of ``volume`` to a fixed ``(Pd, Ph, Pw)`` grid.

    A region whose batch index is outside ``[0, B)`` pools nothing: all of its
    bins are left at 0 with selection index -1.

    Args:
        volume: Feature volume of shape (B, C, D, H, W)
        regions: (R, 7) rows of (batch_index, x1, y1, z1, x2, y2, z2)
        scale_xy: Scale applied to x and y coordinates
        scale_z: Scale applied to z coordinates
        pooled_shape: (Pd, Ph, Pw) or a single int

    Returns:
        output of shape (R, C, Pd, Ph, Pw) and the int64 selection index of the
        same shape (flat d*H*W + h*W + w, -1 for empty bins)
    """
    if volume.dim() != 5:
        raise ValueError(f"volume must be 5-D (B, C, D, H, W), got shape {tuple(volume.shape)}")
    rows = regions_as_list(regions)
    pooled = as_pooled_shape(pooled_shape)
    batch, channels, depth, height, width = volume.shape

    output = volume.new_zeros((len(rows), channels) + pooled)
    argmax = torch.full(output.shape, -1, dtype=torch.long, device=volume.device)

    for n, row in enumerate(rows):
        box = scale_region(row, scale_xy, scale_z)
        if not 0 <= box.batch_index < batch:
            logger.debug("forward: region %d has batch index %d outside [0, %d), left empty", n, box.batch_index, batch)
            continue
        bin_d, bin_h, bin_w = box.bin_sizes(pooled)
        d_bounds = [bin_bounds(i, bin_d, box.start[0], depth) for i in range(pooled[0])]
        h_bounds = [bin_bounds(i, bin_h, box.start[1], height) for i in range(pooled[1])]
        w_bounds = [bin_bounds(i, bin_w, box.start[2], width) for i in range(pooled[2])]
        feat = volume[box.batch_index]

        for (pd, (d0, d1)), (ph, (h0, h1)), (pw, (w0, w1)) in product(
            enumerate(d_bounds), enumerate(h_bounds), enumerate(w_bounds)
        ):
            if d1 <= d0 or h1 <= h0 or w1 <= w0:
                continue
            # Flattened window is scanned depth, height, width
            window = feat[:, d0:d1, h0:h1, w0:w1].reshape(channels, -1)
            values, local = select_max(window)
            ld, lh, lw = decode_flat(local, h1 - h0, w1 - w0)
            output[n, :, pd, ph, pw] = values
            argmax[n, :, pd, ph, pw] = encode_flat(d0 + ld, h0 + lh, w0 + lw, height, width)

    logger.debug("forward: %d regions pooled to %s", len(rows), pooled)
    return output, argmax


@torch.no_grad()
def roi_pool3d_backward(
    grad_output: torch.Tensor,
    argmax: torch.Tensor,
    regions,
    scale_xy: float,
    scale_z: float,
    volume_shape: Sequence[int],
) -> torch.Tensor:
    """
    Route pooled gradients back onto the feature volume.

    An input element (b, c, d, h, w) receives the gradient of bin
    (r, c, pd, ph, pw) when region r belongs to batch b, (d, h, w) lies within
    the region's rounded bounds, the bin is one of those whose range may cover
    (d, h, w), and the selection index of the bin is that element. Matches are
    summed over all regions and bins. A region whose batch index is outside
    ``[0, B)`` matches no input element.

    Args:
        grad_output: Gradient of shape (R, C, Pd, Ph, Pw)
        argmax: Selection index from :func:`roi_pool3d_forward`
        regions: Same region rows as given to the forward call
        scale_xy: Scale applied to x and y coordinates
        scale_z: Scale applied to z coordinates
        volume_shape: (B, C, D, H, W) of the pooled feature volume

    Returns:
        Input gradient of shape ``volume_shape``
    """
    if grad_output.shape != argmax.shape:
        raise ValueError(
            f"grad_output shape {tuple(grad_output.shape)} does not match "
            f"selection index shape {tuple(argmax.shape)}"
        )
    if grad_output.dim() != 5:
        raise ValueError(f"grad_output must be 5-D (R, C, Pd, Ph, Pw), got shape {tuple(grad_output.shape)}")
    if len(volume_shape) != 5:
        raise ValueError(f"volume_shape must have 5 entries, got {tuple(volume_shape)}")
    rows = regions_as_list(regions)
    if grad_output.shape[0] != len(rows):
        raise ValueError(f"grad_output holds {grad_output.shape[0]} regions, got {len(rows)} region rows")

    batch, channels, depth, height, width = (int(s) for s in volume_shape)
    if grad_output.shape[1] != channels:
        raise ValueError(f"grad_output has {grad_output.shape[1]} channels, volume has {channels}")
    pooled = tuple(grad_output.shape[2:])
    device = grad_output.device

    grad_input = grad_output.new_zeros((batch, channels, depth, height, width))
    flat_grad = grad_input.view(batch, channels, -1)
    bin_index = (
        torch.arange(pooled[0], device=device, dtype=torch.float64).view(1, -1, 1, 1),
        torch.arange(pooled[1], device=device, dtype=torch.float64).view(1, 1, -1, 1),
        torch.arange(pooled[2], device=device, dtype=torch.float64).view(1, 1, 1, -1),
    )

    for n, row in enumerate(rows):
        box = scale_region(row, scale_xy, scale_z)
        if not 0 <= box.batch_index < batch:
            continue
        sel = argmax[n]
        mask = (sel >= 0) & (sel < depth * height * width)
        coords = decode_flat(sel.clamp(min=0), height, width)

        for coord, start, end, bin_size, bins, extent in zip(
            coords, box.start, box.end, box.bin_sizes(pooled), bin_index, pooled
        ):
            mask &= (coord >= start) & (coord <= end)
            offset = (coord - start).to(torch.float64)
            lo = torch.floor(offset / bin_size).clamp(0, extent)
            hi = torch.ceil((offset + 1) / bin_size).clamp(0, extent)
            mask &= (bins >= lo) & (bins < hi)

        contrib = torch.where(mask, grad_output[n], torch.zeros_like(grad_output[n]))
        index = torch.where(mask, sel, torch.zeros_like(sel))
        flat_grad[box.batch_index].scatter_add_(1, index.reshape(channels, -1), contrib.reshape(channels, -1))

    logger.debug("backward: %d regions routed onto %s", len(rows), tuple(volume_shape))
    return grad_input
