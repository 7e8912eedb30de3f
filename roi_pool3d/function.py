"""Autograd function and nn.Module wrapper for 3D ROI max pooling."""

from typing import Tuple

import torch
import torch.nn as nn
from torch.autograd import Function

from roi_pool3d.coords import as_pooled_shape
from roi_pool3d.pooling import roi_pool3d_backward, roi_pool3d_forward


class ROIPool3dFunction(Function):
    """Forward pooling with selection-index based backward."""

    @staticmethod
    def forward(ctx, volume, regions, pooled_shape, scale_xy, scale_z):
        output, argmax = roi_pool3d_forward(volume, regions, scale_xy, scale_z, pooled_shape)
        ctx.save_for_backward(regions, argmax)
        ctx.volume_shape = tuple(volume.shape)
        ctx.scale_xy = scale_xy
        ctx.scale_z = scale_z
        ctx.mark_non_differentiable(argmax)
        return output, argmax

    @staticmethod
    def backward(ctx, grad_output, grad_argmax):
        regions, argmax = ctx.saved_tensors
        grad_volume = None
        if ctx.needs_input_grad[0]:
            grad_volume = roi_pool3d_backward(
                grad_output, argmax, regions, ctx.scale_xy, ctx.scale_z, ctx.volume_shape
            )
        return grad_volume, None, None, None, None


def roi_pool3d(
    volume: torch.Tensor,
    regions: torch.Tensor,
    pooled_shape,
    scale_xy: float = 1.0,
    scale_z: float = 1.0,
    return_indices: bool = False,
):
    """
    Functional 3D ROI max pooling

    Args:
        volume: Feature volume (B, C, D, H, W)
        regions: (R, 7) tensor of (batch_index, x1, y1, z1, x2, y2, z2)
        pooled_shape: (Pd, Ph, Pw) or a single int
        scale_xy: Scale for x/y coordinates
        scale_z: Scale for z coordinates
        return_indices: Also return the selection index

    Returns:
        Pooled tensor (R, C, Pd, Ph, Pw), plus the selection index if requested
    """
    pooled_shape = as_pooled_shape(pooled_shape)
    if not isinstance(regions, torch.Tensor):
        regions = torch.as_tensor(regions, dtype=torch.float64)
    output, argmax = ROIPool3dFunction.apply(volume, regions, pooled_shape, scale_xy, scale_z)
    if return_indices:
        return output, argmax
    return output


class ROIPool3d(nn.Module):
    """
    Pools each region of a (B, C, D, H, W) volume to a fixed grid

    Args:
        pooled_shape: Output grid (Pd, Ph, Pw)
        scale_xy: Scale mapping in-plane region coordinates onto the volume
        scale_z: Scale mapping depth region coordinates onto the volume
    """

    def __init__(self, pooled_shape: Tuple[int, int, int], scale_xy: float = 1.0, scale_z: float = 1.0):
        super().__init__()
        self.pooled_shape = as_pooled_shape(pooled_shape)
        self.scale_xy = scale_xy
        self.scale_z = scale_z

    @classmethod
    def from_config(cls, cfg) -> "ROIPool3d":
        cfg.validate()
        return cls(cfg.pooled_shape, scale_xy=cfg.scale_xy, scale_z=cfg.scale_z)

    def forward(self, volume, regions):
        return roi_pool3d(volume, regions, self.pooled_shape, self.scale_xy, self.scale_z)

    def extra_repr(self) -> str:
        return f"pooled_shape={self.pooled_shape}, scale_xy={self.scale_xy}, scale_z={self.scale_z}"
