"""Run report: results.json plus a readable summary.txt."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Tuple


def save_report(results_dir: str, results: Dict[str, Any]) -> Tuple[Path, Path]:
    """
    Write a run's results into ``results_dir``

    Args:
        results_dir: Output directory, created if missing
        results: Dict with config, inputs, timing and checks sections

    Returns:
        Paths of results.json and summary.txt
    """
    out_dir = Path(results_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    json_path = out_dir / "results.json"
    json_path.write_text(json.dumps(results, indent=2) + "\n", encoding="utf-8")

    txt_path = out_dir / "summary.txt"
    txt_path.write_text("\n".join(build_summary(results)) + "\n", encoding="utf-8")

    return json_path, txt_path


def build_summary(results: Dict[str, Any]) -> list:
    """Build the text lines for summary.txt."""
    cfg = results.get("config", {})
    inputs = results.get("inputs", {})
    timing = results.get("timing", {})
    checks = results.get("checks", [])

    lines = [
        "=" * 60,
        "  3D ROI MAX POOLING REPORT",
        "=" * 60,
        "",
        f"Pooled shape:  {cfg.get('pooled_shape', '?')}",
        f"Scale xy / z:  {cfg.get('scale_xy', '?')} / {cfg.get('scale_z', '?')}",
        f"Volume shape:  {inputs.get('volume_shape', '?')}",
        f"Regions:       {inputs.get('num_regions', '?')}",
        f"Empty bins:    {inputs.get('empty_bins', '?')}",
        f"Device:        {cfg.get('device', '?')}",
        f"Date:          {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
    ]

    if timing:
        lines += [
            "-" * 60,
            "  TIMING (mean over timed iterations)",
            "-" * 60,
            "",
            f"  Forward:   {timing.get('forward_ms', float('nan')):10.3f} ms",
            f"  Backward:  {timing.get('backward_ms', float('nan')):10.3f} ms",
            "",
        ]

    if checks:
        lines += [
            "-" * 60,
            "  CHECKS",
            "-" * 60,
            "",
        ]
        for c in checks:
            mark = "OK" if c["passed"] else "FAIL"
            lines.append(f"  {c['name']:16s}  {mark:>4s}  {c['detail']}")
        lines.append("")

    lines.append("=" * 60)
    return lines
