from __future__ import annotations

"""
Data-parallel launch layer for torch devices.

Execution model
---------------
A *kernel* is a Python function whose first argument is a
:class:`ThreadIndex`: the global (x, y, z) coordinates of a batch of work
units, stored as int64 tensors on the target device. The kernel body is
written once, vectorised over those units, and must start with its own
bounds guard (``idx = idx.guard(extent)``) exactly like a device kernel,
because grids are padded up to whole tiles:

    grid  = ceil(extent / block)           (per axis)
    units = grid * block                   (per axis, >= extent)

:func:`launch` enumerates the padded unit space in chunks of at most
``KernelConfig.max_units_per_chunk`` units and calls the kernel once per
chunk. Chunking only bounds memory; units carry no ordering guarantees with
respect to each other, and kernels must not rely on one.

Shared outputs
--------------
Units that may hit the same output cell accumulate with :func:`atomic_add`
(``Tensor.index_add_``: duplicate targets are all summed, CUDA atomics on
device). Uniquely-owned cells use :func:`store`. Nothing here synchronizes;
call :func:`synchronize` before reading results on the host.

Nested dispatch
---------------
:func:`dispatch_instances` runs the outer grid of a batched kernel: a
bounds-guarded 3D launch over ``dimensions`` whose units each own one
independent problem instance. Every instance computes its own buffer offsets
and issues its own inner launch; instances share no memory, so they run
sequentially or on a thread pool (``KernelConfig.batch_workers``).
"""

import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Sequence, Union

import torch
from torch import Tensor

from shkernels.config import KernelConfig, resolve_config
from shkernels.logging_utils import log_kernel_event

__all__ = [
    "Dim3",
    "ThreadIndex",
    "block_size_2d",
    "block_size_3d",
    "grid_size",
    "launch",
    "dispatch_instances",
    "atomic_add",
    "store",
    "advance",
    "synchronize",
    "require_contiguous",
    "require_records",
    "require_capacity",
]


# ---------------------------------------------------------------------------
# Launch geometry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Dim3:
    """(x, y, z) extent, grid or block size. Missing axes default to 1."""

    x: int = 1
    y: int = 1
    z: int = 1

    @classmethod
    def of(cls, value: Union["Dim3", int, Sequence[int]]) -> "Dim3":
        if isinstance(value, Dim3):
            return value
        if isinstance(value, int):
            return cls(value)
        parts = [int(v) for v in value]
        if not 1 <= len(parts) <= 3:
            raise ValueError(f"Dim3 needs 1 to 3 components, got {value!r}")
        return cls(*parts)

    @property
    def volume(self) -> int:
        return self.x * self.y * self.z

    def __iter__(self) -> Iterator[int]:
        return iter((self.x, self.y, self.z))


def block_size_2d(config: Optional[KernelConfig] = None) -> Dim3:
    return Dim3.of(resolve_config(config).block_2d)


def block_size_3d(config: Optional[KernelConfig] = None) -> Dim3:
    return Dim3.of(resolve_config(config).block_3d)


def grid_size(extent: Union[Dim3, Sequence[int]], block: Union[Dim3, Sequence[int]]) -> Dim3:
    """Number of blocks per axis needed to cover ``extent``."""
    extent = Dim3.of(extent)
    block = Dim3.of(block)
    return Dim3(
        math.ceil(extent.x / block.x),
        math.ceil(extent.y / block.y),
        math.ceil(extent.z / block.z),
    )


@dataclass
class ThreadIndex:
    """Global coordinates of a batch of work units (int64 tensors)."""

    x: Tensor
    y: Tensor
    z: Tensor

    @property
    def size(self) -> int:
        return int(self.x.numel())

    @property
    def empty(self) -> bool:
        return self.size == 0

    def where(self, mask: Tensor) -> "ThreadIndex":
        return ThreadIndex(self.x[mask], self.y[mask], self.z[mask])

    def guard(self, extent: Union[Dim3, Sequence[int]]) -> "ThreadIndex":
        """Drop the units outside ``extent``; they do no work."""
        extent = Dim3.of(extent)
        mask = (self.x < extent.x) & (self.y < extent.y) & (self.z < extent.z)
        return self.where(mask)


# ---------------------------------------------------------------------------
# Buffer access
# ---------------------------------------------------------------------------


def atomic_add(buffer: Tensor, flat_index: Tensor, values: Tensor) -> None:
    """``buffer.flat[flat_index] += values`` with every duplicate summed."""
    buffer.view(-1).index_add_(0, flat_index, values.to(buffer.dtype))


def store(buffer: Tensor, flat_index: Tensor, values: Tensor) -> None:
    """Plain scatter write for cells owned by exactly one unit."""
    buffer.view(-1)[flat_index] = values.to(buffer.dtype)


def advance(buffer: Tensor, count: int) -> Tensor:
    """View of ``buffer`` starting ``count`` leading elements further in.

    A leading element is a scalar for 1-D buffers and a record (row) for
    record buffers such as (N, 3) points. Writes through the view land in
    ``buffer``.
    """
    return buffer[count:]


def require_contiguous(name: str, buffer: Tensor) -> None:
    if not isinstance(buffer, Tensor):
        raise TypeError(f"{name} must be a torch.Tensor, got {type(buffer).__name__}")
    if not buffer.is_contiguous():
        raise ValueError(f"{name} must be contiguous")


def require_records(name: str, buffer: Tensor) -> None:
    """(N, 3) floating record buffer: (value, theta, phi)."""
    require_contiguous(name, buffer)
    if buffer.ndim != 2 or buffer.shape[1] != 3:
        raise ValueError(f"{name} must have shape (N, 3), got {tuple(buffer.shape)}")
    if not torch.is_floating_point(buffer):
        raise TypeError(f"{name} must be floating point, got {buffer.dtype}")


def require_capacity(name: str, buffer: Tensor, needed: int, *, rows: bool = False) -> None:
    have = int(buffer.shape[0]) if rows else int(buffer.numel())
    if have < needed:
        unit = "rows" if rows else "elements"
        raise ValueError(f"{name} holds {have} {unit}, launch needs {needed}")


def synchronize(device: Optional[Union[str, torch.device]] = None) -> None:
    """Wait for all queued kernels on ``device`` (no-op on CPU)."""
    device = torch.device(device) if device is not None else None
    if device is not None and device.type != "cuda":
        return
    if torch.cuda.is_available():
        torch.cuda.synchronize(device)


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


def _infer_device(args: Sequence[Any]) -> torch.device:
    for a in args:
        if isinstance(a, Tensor):
            return a.device
    return torch.device("cpu")


def launch(
    kernel: Callable[..., None],
    grid: Union[Dim3, Sequence[int]],
    block: Union[Dim3, Sequence[int]],
    *args: Any,
    config: Optional[KernelConfig] = None,
    device: Optional[torch.device] = None,
    logger: Optional[Any] = None,
    name: Optional[str] = None,
) -> None:
    """Run ``kernel`` over every unit of ``grid * block``.

    ``device`` defaults to the device of the first tensor argument.
    """
    cfg = resolve_config(config)
    grid = Dim3.of(grid)
    block = Dim3.of(block)
    if device is None:
        device = _infer_device(args)

    span_x = grid.x * block.x
    span_xy = span_x * grid.y * block.y
    total = span_xy * grid.z * block.z
    chunk = cfg.max_units_per_chunk

    t0 = time.perf_counter()
    n_chunks = 0
    for start in range(0, total, chunk):
        lin = torch.arange(start, min(start + chunk, total), device=device, dtype=torch.int64)
        idx = ThreadIndex(
            x=lin % span_x,
            y=(lin // span_x) % (grid.y * block.y),
            z=lin // span_xy,
        )
        kernel(idx, *args)
        n_chunks += 1

    log_kernel_event(
        logger,
        "kernel_launch",
        kernel=name or getattr(kernel, "__name__", "kernel"),
        grid=list(grid),
        block=list(block),
        units=total,
        chunks=n_chunks,
        device=str(device),
        host_time_s=time.perf_counter() - t0,
    )


def _collect_instances(idx: ThreadIndex, dimensions: Dim3, out: List[Tensor]) -> None:
    idx = idx.guard(dimensions)
    if idx.empty:
        return
    out.append(idx.z + dimensions.z * (idx.y + dimensions.y * idx.x))


def dispatch_instances(
    dimensions: Union[Dim3, Sequence[int]],
    instance_fn: Callable[[int], None],
    *,
    config: Optional[KernelConfig] = None,
    logger: Optional[Any] = None,
    name: str = "batched",
) -> int:
    """Outer grid of a batched kernel.

    Launches a bounds-guarded 3D grid over ``dimensions``; every in-range
    unit contributes its linear instance number
    ``z + dimensions.z * (y + dimensions.y * x)`` and ``instance_fn`` is
    then called once per instance. Exceptions raised by an instance
    propagate to the caller. Returns the number of instances dispatched.
    """
    cfg = resolve_config(config)
    dims = Dim3.of(dimensions)
    block = block_size_3d(cfg)

    found: List[Tensor] = []
    launch(
        _collect_instances,
        grid_size(dims, block),
        block,
        dims,
        found,
        config=cfg,
        device=torch.device("cpu"),
        name=f"{name}:outer",
    )
    instances = sorted(int(i) for t in found for i in t.tolist())

    log_kernel_event(
        logger,
        "batched_dispatch",
        kernel=name,
        dimensions=list(dims),
        instances=len(instances),
        workers=cfg.batch_workers,
    )

    if cfg.batch_workers == 1 or len(instances) <= 1:
        for instance in instances:
            instance_fn(instance)
        return len(instances)

    with ThreadPoolExecutor(max_workers=cfg.batch_workers) as ex:
        futures = [ex.submit(instance_fn, instance) for instance in instances]
        for fut in futures:
            fut.result()
    return len(instances)
