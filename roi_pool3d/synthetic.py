"""Synthetic feature volumes and region lists for runs and checks."""

from typing import Sequence

import torch


def make_volume(shape: Sequence[int], seed: int = 0, device: str = "cpu", dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """Random (B, C, D, H, W) volume; values are distinct so the maxima are unique."""
    generator = torch.Generator().manual_seed(seed)
    numel = 1
    for s in shape:
        numel *= int(s)
    values = torch.randperm(numel, generator=generator).to(torch.float64) / max(numel, 1)
    return values.view(*shape).to(device=device, dtype=dtype)


def make_regions(
    num_regions: int,
    volume_shape: Sequence[int],
    scale_xy: float = 1.0,
    scale_z: float = 1.0,
    seed: int = 0,
) -> torch.Tensor:
    """
    Random regions in original (unscaled) coordinates

    About one region in eight is inverted and one in eight lies past the
    volume edge, so the clamping paths get exercised.

    Returns:
        (num_regions, 7) float64 tensor of (batch, x1, y1, z1, x2, y2, z2)
    """
    batch, _, depth, height, width = (int(s) for s in volume_shape)
    generator = torch.Generator().manual_seed(seed)
    # Region extents in original space
    limits = torch.tensor([width / scale_xy, height / scale_xy, depth / scale_z], dtype=torch.float64)

    regions = torch.zeros(num_regions, 7, dtype=torch.float64)
    for i in range(num_regions):
        start = torch.rand(3, generator=generator, dtype=torch.float64) * limits
        end = start + torch.rand(3, generator=generator, dtype=torch.float64) * (limits - start)
        kind = i % 8
        if kind == 6:
            start, end = end, start
        elif kind == 7:
            start = limits + 1.0 + start
            end = start + 1.0
        regions[i, 0] = int(torch.randint(batch, (1,), generator=generator))
        regions[i, 1:4] = start
        regions[i, 4:7] = end
    return regions
