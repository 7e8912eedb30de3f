"""Property checks run against the vectorized operators."""

from typing import Any, Dict, Optional

import numpy as np
import torch

from roi_pool3d.coords import decode_flat, regions_as_list, scale_region
from roi_pool3d.pooling import roi_pool3d_backward, roi_pool3d_forward
from roi_pool3d.reference import reference_backward, reference_forward


def _result(name: str, passed: bool, detail: str) -> Dict[str, Any]:
    return {"name": name, "passed": bool(passed), "detail": detail}


def check_determinism(volume, regions, scale_xy, scale_z, pooled_shape, repeats: int = 3) -> Dict[str, Any]:
    """Repeated forward calls give identical outputs and selections."""
    first_out, first_idx = roi_pool3d_forward(volume, regions, scale_xy, scale_z, pooled_shape)
    for i in range(1, repeats):
        out, idx = roi_pool3d_forward(volume, regions, scale_xy, scale_z, pooled_shape)
        if not (torch.equal(out, first_out) and torch.equal(idx, first_idx)):
            return _result("determinism", False, f"call {i} differs from call 0")
    return _result("determinism", True, f"{repeats} identical forward calls")


def count_routable_selections(argmax: torch.Tensor, regions, scale_xy, scale_z, volume_shape) -> int:
    """Non-empty selections whose element lies inside its region's rounded bounds."""
    height, width = int(volume_shape[3]), int(volume_shape[4])
    total = 0
    for n, row in enumerate(regions_as_list(regions)):
        box = scale_region(row, scale_xy, scale_z)
        sel = argmax[n][argmax[n] >= 0]
        inside = torch.ones_like(sel, dtype=torch.bool)
        for coord, start, end in zip(decode_flat(sel, height, width), box.start, box.end):
            inside &= (coord >= start) & (coord <= end)
        total += int(inside.sum())
    return total


def check_adjoint(volume, regions, scale_xy, scale_z, pooled_shape) -> Dict[str, Any]:
    """An all-ones output gradient puts exactly one unit per selected element."""
    output, argmax = roi_pool3d_forward(volume, regions, scale_xy, scale_z, pooled_shape)
    grad = roi_pool3d_backward(
        torch.ones_like(output), argmax, regions, scale_xy, scale_z, tuple(volume.shape)
    )
    expected = count_routable_selections(argmax, regions, scale_xy, scale_z, volume.shape)
    total = float(grad.sum())
    passed = abs(total - expected) < 1e-3
    return _result("adjoint", passed, f"gradient sum {total:.1f}, expected {expected}")


def check_batch_isolation(volume, regions, scale_xy, scale_z, pooled_shape) -> Dict[str, Any]:
    """A region only ever sends gradient to its own batch element."""
    rows = regions_as_list(regions)
    for n, row in enumerate(rows):
        single = [row]
        output, argmax = roi_pool3d_forward(volume, single, scale_xy, scale_z, pooled_shape)
        grad = roi_pool3d_backward(
            torch.ones_like(output), argmax, single, scale_xy, scale_z, tuple(volume.shape)
        )
        others = [b for b in range(volume.shape[0]) if b != int(row[0])]
        if others and grad[others].abs().sum() > 0:
            return _result("batch_isolation", False, f"region {n} leaked gradient into batches {others}")
    return _result("batch_isolation", True, f"{len(rows)} regions checked")


def check_reference(
    volume,
    regions,
    scale_xy,
    scale_z,
    pooled_shape,
    n_workers: Optional[int] = 1,
    seed: int = 0,
) -> Dict[str, Any]:
    """Vectorized and element-wise kernels agree on outputs, selections and gradients."""
    output, argmax = roi_pool3d_forward(volume, regions, scale_xy, scale_z, pooled_shape)
    ref_output, ref_argmax = reference_forward(volume, regions, scale_xy, scale_z, pooled_shape, n_workers=n_workers)

    if not np.array_equal(argmax.cpu().numpy(), ref_argmax):
        mismatches = int((argmax.cpu().numpy() != ref_argmax).sum())
        return _result("reference", False, f"{mismatches} selection index mismatches")
    if not np.allclose(output.cpu().numpy(), ref_output, equal_nan=True):
        return _result("reference", False, "pooled values differ")

    generator = torch.Generator().manual_seed(seed)
    grad_output = torch.randn(output.shape, generator=generator, dtype=torch.float64).to(output)
    grad = roi_pool3d_backward(grad_output, argmax, regions, scale_xy, scale_z, tuple(volume.shape))
    ref_grad = reference_backward(grad_output, argmax, regions, scale_xy, scale_z, tuple(volume.shape), n_workers=n_workers)
    if not np.allclose(grad.cpu().numpy(), ref_grad, atol=1e-5):
        diff = float(np.abs(grad.cpu().numpy() - ref_grad).max())
        return _result("reference", False, f"gradients differ (max abs diff {diff:.3e})")

    return _result("reference", True, f"{argmax.numel()} selections and {grad.numel()} gradients match")
