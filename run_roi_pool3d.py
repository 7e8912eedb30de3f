#!/usr/bin/env python3
"""3D ROI pooling run.

Builds a synthetic feature volume and region list, times the forward and
backward operators, checks their properties and writes a report.

Usage:
    python run_roi_pool3d.py --config configs/roi_pool3d.yaml
"""

import argparse
import sys
import time

import torch

from roi_pool3d.checks import check_adjoint, check_batch_isolation, check_determinism, check_reference
from roi_pool3d.config import load_config
from roi_pool3d.log import setup_logger
from roi_pool3d.pooling import roi_pool3d_backward, roi_pool3d_forward
from roi_pool3d.report import save_report
from roi_pool3d.synthetic import make_regions, make_volume


def _sync(device: str) -> None:
    if device.startswith("cuda"):
        torch.cuda.synchronize()


def time_operators(volume, regions, pooling, device, warmup, iterations):
    """Mean forward/backward wall time in milliseconds."""
    args = (regions, pooling.scale_xy, pooling.scale_z)
    output, argmax = roi_pool3d_forward(volume, *args, pooling.pooled_shape)
    grad_output = torch.ones_like(output)

    for _ in range(warmup):
        roi_pool3d_forward(volume, *args, pooling.pooled_shape)
        roi_pool3d_backward(grad_output, argmax, *args, tuple(volume.shape))

    forward_s, backward_s = 0.0, 0.0
    for _ in range(iterations):
        _sync(device)
        t0 = time.perf_counter()
        roi_pool3d_forward(volume, *args, pooling.pooled_shape)
        _sync(device)
        t1 = time.perf_counter()
        roi_pool3d_backward(grad_output, argmax, *args, tuple(volume.shape))
        _sync(device)
        t2 = time.perf_counter()
        forward_s += t1 - t0
        backward_s += t2 - t1

    return {
        "forward_ms": 1000.0 * forward_s / iterations,
        "backward_ms": 1000.0 * backward_s / iterations,
    }


def main():
    parser = argparse.ArgumentParser(description="3D ROI max pooling run")
    parser.add_argument("--config", required=True, help="Path to YAML config")
    args = parser.parse_args()

    # ── 1. Load config ────────────────────────────────────────────
    cfg = load_config(args.config)
    cfg.validate()
    pooling, run = cfg.pooling, cfg.run
    logger = setup_logger(run.log_file)
    logger.info(f"[1/5] Loaded config: {args.config}")

    if run.device.startswith("cuda") and not torch.cuda.is_available():
        raise RuntimeError(f"CUDA not available but device set to '{run.device}'")

    # ── 2. Synthetic inputs ───────────────────────────────────────
    dtype = getattr(torch, run.dtype)
    volume = make_volume(run.volume_shape, seed=run.seed, device=run.device, dtype=dtype)
    regions = make_regions(run.num_regions, run.volume_shape, pooling.scale_xy, pooling.scale_z, seed=run.seed)
    _, argmax = roi_pool3d_forward(volume, regions, pooling.scale_xy, pooling.scale_z, pooling.pooled_shape)
    empty_bins = int((argmax == -1).sum())
    logger.info(f"[2/5] Volume {tuple(volume.shape)}, {run.num_regions} regions, {empty_bins} empty bins")

    # ── 3. Timing ─────────────────────────────────────────────────
    logger.info(f"[3/5] Timing {run.iterations} iterations ({run.warmup_iterations} warmup)...")
    timing = time_operators(volume, regions, pooling, run.device, run.warmup_iterations, run.iterations)
    logger.info(f"       forward {timing['forward_ms']:.3f} ms, backward {timing['backward_ms']:.3f} ms")

    # ── 4. Checks ─────────────────────────────────────────────────
    logger.info("[4/5] Running checks...")
    check_args = (volume, regions, pooling.scale_xy, pooling.scale_z, pooling.pooled_shape)
    checks = [
        check_determinism(*check_args),
        check_adjoint(*check_args),
        check_batch_isolation(*check_args),
    ]
    if run.check_reference:
        checks.append(check_reference(*check_args, n_workers=run.workers, seed=run.seed))
    for c in checks:
        log = logger.info if c["passed"] else logger.error
        log(f"       {c['name']}: {'OK' if c['passed'] else 'FAIL'} - {c['detail']}")

    # ── 5. Save report ────────────────────────────────────────────
    results = {
        "config": {
            "pooled_shape": list(pooling.pooled_shape),
            "scale_xy": pooling.scale_xy,
            "scale_z": pooling.scale_z,
            "device": run.device,
            "dtype": run.dtype,
            "seed": run.seed,
        },
        "inputs": {
            "volume_shape": list(volume.shape),
            "num_regions": run.num_regions,
            "empty_bins": empty_bins,
        },
        "timing": timing,
        "checks": checks,
    }

    logger.info(f"[5/5] Saving results to {run.results_dir}...")
    json_path, txt_path = save_report(run.results_dir, results)
    logger.info(f"       {json_path}")
    logger.info(f"       {txt_path}")

    if not all(c["passed"] for c in checks):
        logger.error("Some checks failed")
        sys.exit(1)
    logger.info("Done!")


if __name__ == "__main__":
    main()
