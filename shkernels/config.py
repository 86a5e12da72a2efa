from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Tuple, Union

import torch
import yaml

from shkernels.utils.device import resolve_device

# -------------------------
# Launch geometry defaults
# -------------------------
# Fixed tile shapes: 16x16 for 2D launches, 8x8x8 for 3D launches. Grids are
# obtained by ceiling-dividing the true extents; edge tiles are masked by the
# bounds guard inside each kernel body.
DEFAULT_BLOCK_2D: Tuple[int, int, int] = (16, 16, 1)
DEFAULT_BLOCK_3D: Tuple[int, int, int] = (8, 8, 8)

# Upper bound on the number of work units materialised per kernel chunk.
# Every unit carries a handful of index / angle tensors, so 2**20 units keeps
# a single chunk well below 100 MB in float64.
DEFAULT_MAX_UNITS_PER_CHUNK: int = 1 << 20

PrecisionKind = Literal["single", "double"]

ConfigLike = Union[str, Path, Mapping[str, Any]]


@dataclass
class KernelConfig:
    """Execution settings for the spherical-harmonic kernels.

    Kernels are generic over precision: they compute in the dtype of the
    buffers handed to them. ``dtype`` / ``atomics_dtype`` are therefore only
    used by code that *allocates* buffers (the CLI, convenience helpers and
    tests).

    Parameters
    ----------
    precision:
        High-level precision policy:
          * "single" -> float32 buffers
          * "double" -> float64 buffers
    dtype:
        Torch dtype for directions, points and coefficients. Derived from
        ``precision`` in ``__post_init__`` when not given.
    atomics_dtype:
        Dtype of accumulation targets for the coupling product. Defaults to
        ``dtype``; set to ``torch.float32`` on devices without a native
        float64 atomic add.
    device:
        "auto" (CUDA when available), "cpu", "cuda", "cuda:1", ...
    block_2d, block_3d:
        Tile shapes for 2D and 3D launches.
    max_units_per_chunk:
        Maximum number of work units evaluated in one vectorised chunk of a
        launch. Bounds peak memory; has no effect on results.
    batch_workers:
        Number of host threads used by batched (multi-instance) dispatch.
        ``1`` runs instances sequentially.
    """

    precision: PrecisionKind = "single"
    dtype: Optional[torch.dtype] = None
    atomics_dtype: Optional[torch.dtype] = None
    device: Union[str, torch.device] = "auto"

    block_2d: Tuple[int, int, int] = DEFAULT_BLOCK_2D
    block_3d: Tuple[int, int, int] = DEFAULT_BLOCK_3D
    max_units_per_chunk: int = DEFAULT_MAX_UNITS_PER_CHUNK
    batch_workers: int = 1

    def __post_init__(self) -> None:
        """Fill in derived fields and run basic validation."""
        if self.dtype is None:
            self.dtype = torch.float64 if self.precision == "double" else torch.float32
        if self.atomics_dtype is None:
            self.atomics_dtype = self.dtype
        self.block_2d = tuple(int(b) for b in self.block_2d)  # type: ignore[assignment]
        self.block_3d = tuple(int(b) for b in self.block_3d)  # type: ignore[assignment]
        self.validate()

    def validate(self) -> None:
        """Perform cheap validation of basic parameters."""
        if self.precision not in ("single", "double"):
            raise ValueError(
                f"precision must be 'single' or 'double'; got {self.precision!r}"
            )
        for name in ("dtype", "atomics_dtype"):
            value = getattr(self, name)
            if value not in (torch.float32, torch.float64):
                raise ValueError(
                    f"{name} must be torch.float32 or torch.float64; got {value!r}"
                )
        for name in ("block_2d", "block_3d"):
            block = getattr(self, name)
            if len(block) != 3 or any(b <= 0 for b in block):
                raise ValueError(f"{name} must be three positive ints; got {block!r}")
        if self.max_units_per_chunk <= 0:
            raise ValueError("max_units_per_chunk must be positive")
        if self.batch_workers <= 0:
            raise ValueError("batch_workers must be positive")

    @property
    def torch_device(self) -> torch.device:
        return resolve_device(self.device)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_DTYPE_NAMES = {
    "float32": torch.float32,
    "float64": torch.float64,
    "single": torch.float32,
    "double": torch.float64,
}


def _coerce_dtype(value: Any) -> Any:
    if isinstance(value, str):
        key = value.strip().lower().replace("torch.", "")
        if key not in _DTYPE_NAMES:
            raise ValueError(f"Unrecognized dtype name: {value!r}")
        return _DTYPE_NAMES[key]
    return value


def _load_raw_config(config: ConfigLike) -> dict:
    """
    Load a raw config dict from:
    - path to .json / .yaml / .yml
    - already-parsed dict-like object
    """
    if not isinstance(config, (str, Path)):
        return dict(config)

    path = Path(config)
    if not path.exists():
        raise FileNotFoundError(f"Config path does not exist: {path}")
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text)
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"Config file {path} must contain a mapping at top level")
    return dict(raw)


def load_config(config: Optional[ConfigLike] = None, **overrides: Any) -> KernelConfig:
    """Build a :class:`KernelConfig` from a file / mapping plus keyword overrides.

    ``None`` overrides are ignored, which lets CLI code pass unset options
    straight through.
    """
    raw = _load_raw_config(config) if config is not None else {}
    raw.update({k: v for k, v in overrides.items() if v is not None})

    known = {f.name for f in fields(KernelConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown KernelConfig keys: {unknown}")

    for key in ("dtype", "atomics_dtype"):
        if key in raw:
            raw[key] = _coerce_dtype(raw[key])
    return KernelConfig(**raw)


def resolve_config(config: Optional[KernelConfig]) -> KernelConfig:
    """Return ``config`` or a default :class:`KernelConfig`."""
    return config if config is not None else KernelConfig()


__all__ = [
    "DEFAULT_BLOCK_2D",
    "DEFAULT_BLOCK_3D",
    "DEFAULT_MAX_UNITS_PER_CHUNK",
    "PrecisionKind",
    "KernelConfig",
    "load_config",
    "resolve_config",
]
