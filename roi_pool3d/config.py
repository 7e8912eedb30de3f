"""Parse YAML configuration for ROI pooling runs."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import yaml


@dataclass
class PoolingConfig:
    """Layer parameters of the pooling operator."""

    pooled_depth: int
    pooled_height: int
    pooled_width: int
    scale_xy: float = 1.0
    scale_z: float = 1.0

    @property
    def pooled_shape(self) -> Tuple[int, int, int]:
        return (self.pooled_depth, self.pooled_height, self.pooled_width)

    def validate(self) -> None:
        """The operators divide by the pooled extents and never check them."""
        errors = []

        for name, value in zip(("pooled_depth", "pooled_height", "pooled_width"), self.pooled_shape):
            if not isinstance(value, int) or value <= 0:
                errors.append(f"{name} must be a positive integer, got {value!r}")

        if self.scale_xy <= 0:
            errors.append(f"scale_xy must be positive, got {self.scale_xy}")
        if self.scale_z <= 0:
            errors.append(f"scale_z must be positive, got {self.scale_z}")

        if errors:
            raise ValueError("Pooling config validation failed:\n  " + "\n  ".join(errors))


@dataclass
class RunConfig:
    """Settings of a synthetic benchmark / check run."""

    volume_shape: List[int] = field(default_factory=lambda: [2, 4, 16, 32, 32])
    num_regions: int = 16
    seed: int = 0
    device: str = "cpu"
    dtype: str = "float32"

    # Timing
    warmup_iterations: int = 1
    iterations: int = 3

    # Checks
    check_reference: bool = True
    workers: Optional[int] = None

    # Output
    results_dir: str = "_results/roi_pool3d"
    log_file: Optional[str] = None

    def validate(self) -> None:
        errors = []

        if len(self.volume_shape) != 5 or any(int(s) <= 0 for s in self.volume_shape):
            errors.append(f"volume_shape must be 5 positive ints (B, C, D, H, W), got {self.volume_shape}")
        if self.num_regions < 0:
            errors.append(f"num_regions must be >= 0, got {self.num_regions}")
        if self.warmup_iterations < 0:
            errors.append(f"warmup_iterations must be >= 0, got {self.warmup_iterations}")
        if self.iterations < 1:
            errors.append(f"iterations must be >= 1, got {self.iterations}")
        if self.dtype not in ("float32", "float64"):
            errors.append(f"dtype must be float32 or float64, got {self.dtype}")

        if errors:
            raise ValueError("Run config validation failed:\n  " + "\n  ".join(errors))


@dataclass
class Config:
    pooling: PoolingConfig
    run: RunConfig

    def validate(self) -> None:
        self.pooling.validate()
        self.run.validate()


def load_config(config_path: str) -> Config:
    """Load and parse a YAML config file into a Config."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config must be a YAML mapping at root level.")

    pooling_cfg = raw.get("pooling", {})
    run_cfg = raw.get("run", {})
    if "pooled_shape" not in pooling_cfg:
        raise ValueError("'pooling.pooled_shape' is required in config file")

    pooled = pooling_cfg["pooled_shape"]
    if isinstance(pooled, int):
        pooled = [pooled] * 3
    if len(pooled) != 3:
        raise ValueError(f"'pooling.pooled_shape' must have 3 entries, got {pooled}")

    defaults = RunConfig()
    return Config(
        pooling=PoolingConfig(
            pooled_depth=pooled[0],
            pooled_height=pooled[1],
            pooled_width=pooled[2],
            scale_xy=float(pooling_cfg.get("scale_xy", 1.0)),
            scale_z=float(pooling_cfg.get("scale_z", 1.0)),
        ),
        run=RunConfig(
            volume_shape=list(run_cfg.get("volume_shape", defaults.volume_shape)),
            num_regions=run_cfg.get("num_regions", defaults.num_regions),
            seed=run_cfg.get("seed", defaults.seed),
            device=run_cfg.get("device", defaults.device),
            dtype=run_cfg.get("dtype", defaults.dtype),
            warmup_iterations=run_cfg.get("warmup_iterations", defaults.warmup_iterations),
            iterations=run_cfg.get("iterations", defaults.iterations),
            check_reference=run_cfg.get("check_reference", defaults.check_reference),
            workers=run_cfg.get("workers", defaults.workers),
            results_dir=run_cfg.get("results_dir", defaults.results_dir),
            log_file=run_cfg.get("log_file", defaults.log_file),
        ),
    )
