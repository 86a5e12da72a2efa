from __future__ import annotations

"""
Logging helpers for the kernel layer.

Responsibilities
----------------
- Provide lightweight wrappers around the project's JsonlLogger.
- Centralize kernel launch log keys (kernel, grid, block, extent, ...).
- Ensure verbose console logging works additively with structured loggers.
- Provide crash-safe tensor / coefficient-spectrum debugging helpers.

Environment variables
---------------------
SHK_LOG_LEVEL
    Optional log level hint for log_kernel_event. One of
    {"debug", "info", "warning", "error", "critical"} (case-insensitive).
    Defaults to "debug": launch events are chatty.

SHK_DEBUG_VERBOSE
    If truthy ("1", "true", "yes", "on"), kernel events and tensor stats are
    also printed to stdout even when no structured logger is supplied.
"""

import math
import os
from typing import Any, List, Optional

import torch
from torch import Tensor


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------

_TRUE_VALUES = {"1", "true", "yes", "on", "y"}
_VERBOSE_ENV = "SHK_DEBUG_VERBOSE"
_LEVEL_ENV = "SHK_LOG_LEVEL"
_LEVELS = {"debug", "info", "warning", "error", "critical"}


def want_verbose_debug(default: bool = False) -> bool:
    """
    Single source of truth for 'turn on noisy kernel debug logs'.

    True if either:
      - SHK_DEBUG_VERBOSE is truthy, or
      - SHK_LOG_LEVEL == 'debug' is set explicitly
    """
    raw = os.environ.get(_VERBOSE_ENV, "")
    if raw.strip().lower() in _TRUE_VALUES:
        return True
    if os.environ.get(_LEVEL_ENV, "").strip().lower() == "debug":
        return True
    return default


def get_log_level() -> str:
    """
    Return a normalized log level for kernel events based on SHK_LOG_LEVEL.
    """
    lvl = os.environ.get(_LEVEL_ENV, "debug").strip().lower()
    if lvl not in _LEVELS:
        return "debug"
    return lvl


# ---------------------------------------------------------------------------
# Loggers: Console & Combined
# ---------------------------------------------------------------------------


class ConsoleLogger:
    """
    Simple stdout logger for kernel debug traces.
    Safe to use anywhere; no external logging config needed.
    """

    @staticmethod
    def _format(msg: str, fields: dict) -> str:
        if not fields:
            return msg
        kv = " ".join(f"{k}={v}" for k, v in fields.items())
        return f"{msg} {kv}"

    def info(self, msg: str, **fields: Any) -> None:
        print(f"[SHK] {self._format(msg, fields)}", flush=True)

    def warning(self, msg: str, **fields: Any) -> None:
        print(f"[SHK-WARN] {self._format(msg, fields)}", flush=True)

    def error(self, msg: str, **fields: Any) -> None:
        print(f"[SHK-ERR] {self._format(msg, fields)}", flush=True)

    def debug(self, msg: str, **fields: Any) -> None:
        print(f"[SHK-DEBUG] {self._format(msg, fields)}", flush=True)


class CombinedLogger:
    """
    Fans out log calls to multiple loggers.
    Used to ensure verbose console logs occur even if a structured logger is present.
    """

    def __init__(self, *loggers: Any) -> None:
        self._loggers = [lg for lg in loggers if lg is not None]

    def _broadcast(self, method_name: str, msg: str, **kwargs: Any) -> None:
        for lg in self._loggers:
            fn = getattr(lg, method_name, None)
            if fn is None:
                fn = getattr(lg, "info", None)
            if callable(fn):
                fn(msg, **kwargs)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._broadcast("debug", msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._broadcast("info", msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._broadcast("warning", msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._broadcast("error", msg, **kwargs)


def get_logger(logger: Optional[Any] = None) -> Any:
    """
    Returns the appropriate logger instance.

    1. If verbose debug is OFF, return ``logger`` unchanged (possibly None).
    2. If verbose debug is ON:
       - return a ConsoleLogger if ``logger`` is None,
       - return CombinedLogger(logger, ConsoleLogger) otherwise.
    """
    if not want_verbose_debug():
        return logger

    console = ConsoleLogger()
    if logger is None:
        return console
    if isinstance(logger, CombinedLogger):
        return logger
    return CombinedLogger(logger, console)


# ---------------------------------------------------------------------------
# Structured kernel events
# ---------------------------------------------------------------------------


def log_kernel_event(logger: Optional[Any], event: str, **fields: Any) -> None:
    """
    Emit a structured kernel log event if a logger is available.

    Respects verbosity settings: if logger is None but verbose is on,
    it will log to ConsoleLogger.
    """
    resolved = get_logger(logger)
    if resolved is None:
        return

    log_fn = getattr(resolved, get_log_level(), None)
    if not callable(log_fn):
        log_fn = getattr(resolved, "info", None)
    if callable(log_fn):
        log_fn(event, **fields)


# ---------------------------------------------------------------------------
# Robust Tensor Debugging
# ---------------------------------------------------------------------------


def _safe_tensor(x: Any) -> Optional[Tensor]:
    """
    Best-effort conversion of arbitrary array-like objects to a torch.Tensor.
    Returns None if conversion fails.
    """
    if isinstance(x, torch.Tensor):
        return x
    try:
        return torch.as_tensor(x)
    except (TypeError, ValueError, RuntimeError):
        return None


def debug_tensor_stats(name: str, x: Any, logger: Optional[Any] = None) -> None:
    """
    Debug print that never crashes if x is list/None/etc.
    If logger is None, it respects the global verbosity setting.
    """
    logger = get_logger(logger)
    if logger is None:
        return

    if x is None:
        logger.debug(f"{name}: <None>")
        return

    t = _safe_tensor(x)
    if t is None:
        logger.debug(f"{name}: <{type(x).__name__}> (not a tensor)")
        return

    if t.numel() == 0:
        logger.debug(f"{name}: empty tensor")
        return

    t_float = t.detach().to(torch.float64)
    logger.debug(
        f"{name}: shape={tuple(t.shape)}, dtype={t.dtype}, "
        f"min={t_float.min().item():.3e}, "
        f"max={t_float.max().item():.3e}, "
        f"mean={t_float.mean().item():.3e}"
    )


def log_spectral_stats(
    logger: Optional[Any],
    stage_name: str,
    coefficients: Any,
    threshold: float = 1e5,
) -> List[float]:
    """
    Per-degree L2 power of a (batch of) coefficient vector(s).

    ``coefficients`` has shape (..., (max_l + 1)**2). The power of degree l
    is the L2 norm of the 2l + 1 coefficients of that degree, averaged in
    magnitude over any leading batch dimensions. Returns the spectrum and
    logs it if a logger is available.
    """
    t = _safe_tensor(coefficients)
    if t is None or t.numel() == 0:
        return []

    t = t.detach().to(torch.float64)
    if t.ndim == 1:
        t = t.unsqueeze(0)
    avg = t.reshape(-1, t.shape[-1]).abs().mean(dim=0)

    max_l = math.isqrt(int(avg.shape[0])) - 1
    spectrum: List[float] = []
    for l in range(max_l + 1):
        block = avg[l * l : (l + 1) * (l + 1)]
        spectrum.append(float(torch.linalg.vector_norm(block).item()))

    logger = get_logger(logger)
    if logger is None:
        return spectrum

    if not torch.isfinite(t).all():
        logger.error(f"[{stage_name}] coefficients contain NaNs or Infs")
        return spectrum

    spectrum_str = ", ".join(f"l{l}={val:.1e}" for l, val in enumerate(spectrum))
    logger.info(f"[{stage_name}] Spectrum: [{spectrum_str}]")

    max_val = float(t.abs().max().item())
    if max_val > threshold:
        logger.warning(f"[{stage_name}] coefficients exceed threshold {threshold:.1e}")
    return spectrum


__all__ = [
    "want_verbose_debug",
    "get_log_level",
    "ConsoleLogger",
    "CombinedLogger",
    "get_logger",
    "log_kernel_event",
    "debug_tensor_stats",
    "log_spectral_stats",
]
