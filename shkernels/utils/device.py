"""Device helpers shared by the kernel layer, the CLI and the tests.

Device selection defaults to CUDA whenever available while staying
import-safe on CPU-only machines.
"""

from __future__ import annotations

from typing import Optional, Union

import torch


def get_default_device() -> torch.device:
    """Return the preferred device, prioritizing CUDA when available."""
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def resolve_device(device: Optional[Union[str, torch.device]] = None) -> torch.device:
    """Turn ``None`` / ``"auto"`` / a device string into a ``torch.device``."""
    if device is None or (isinstance(device, str) and device == "auto"):
        return get_default_device()
    return torch.device(device)


def assert_cuda_tensor(tensor: torch.Tensor, name: str = "tensor") -> None:
    """Assert that a tensor resides on CUDA in debug/test builds."""
    if not tensor.is_cuda:
        raise AssertionError(f"{name} expected to be on CUDA device, found {tensor.device}")
