#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import random
import sys
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import torch

from shkernels.config import KernelConfig, load_config
from shkernels.index_math import coefficient_count, maximum_degree
from shkernels.launch import synchronize
from shkernels.logging_utils import debug_tensor_stats, log_spectral_stats
from shkernels.matrix import calculate_matrix
from shkernels.product import product, product_batched
from shkernels.sampling import sample, sample_sum, sample_sums
from shkernels.utils.logging import JsonlLogger, log_peak_vram, log_runtime_environment

DEFAULT_SEED = 0


# ------------------------
# Run helpers
# ------------------------


def _set_seeds(seed: int, logger: JsonlLogger) -> None:
    """Seed Python, NumPy, and torch RNGs deterministically."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
    logger.info("Seeds set.", seed=seed)


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """
    Atomic JSON write: write to temp file then os.replace into place.
    """
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def _save_buffer(out: Path, name: str, t: torch.Tensor, logger: JsonlLogger) -> str:
    path = out / f"{name}.npy"
    np.save(path, t.detach().cpu().numpy())
    debug_tensor_stats(name, t, logger)
    logger.info("Buffer written.", name=name, path=str(path), shape=list(t.shape), dtype=t.dtype)
    return path.name


def _load_coefficients(path: str, cfg: KernelConfig) -> torch.Tensor:
    arr = np.load(Path(path).expanduser())
    if arr.ndim not in (1, 2):
        raise ValueError(f"{path}: expected a (C,) or (B, C) array, got shape {arr.shape}")
    C = arr.shape[-1]
    if coefficient_count(maximum_degree(C)) != C:
        raise ValueError(f"{path}: coefficient count {C} is not a perfect square")
    return torch.as_tensor(arr, dtype=cfg.dtype, device=cfg.torch_device).contiguous()


def _random_directions(count: int, cfg: KernelConfig) -> torch.Tensor:
    """Uniform directions on the unit sphere as (1, theta, phi) records."""
    u = torch.rand(count, 2, dtype=torch.float64)
    theta = 2.0 * np.pi * u[:, 0]
    phi = torch.arccos(1.0 - 2.0 * u[:, 1])
    vectors = torch.stack([torch.ones(count, dtype=torch.float64), theta, phi], dim=1)
    return vectors.to(device=cfg.torch_device, dtype=cfg.dtype).contiguous()


# ------------------------
# Subcommands
# ------------------------


def _cmd_sample(args: argparse.Namespace, cfg: KernelConfig, logger: JsonlLogger, out: Path) -> Dict[str, Any]:
    X, Y = args.tess
    device = cfg.torch_device
    points = torch.zeros(X * Y, 3, dtype=cfg.dtype, device=device)
    indices = torch.zeros(6 * X * Y, dtype=torch.int64, device=device)

    sample(args.l, args.m, (X, Y), points, indices, config=cfg, logger=logger)
    synchronize(device)
    return {
        "l": args.l,
        "m": args.m,
        "tessellations": [X, Y],
        "outputs": {
            "points": _save_buffer(out, "points", points, logger),
            "indices": _save_buffer(out, "indices", indices, logger),
        },
    }


def _cmd_reconstruct(args: argparse.Namespace, cfg: KernelConfig, logger: JsonlLogger, out: Path) -> Dict[str, Any]:
    X, Y = args.tess
    coeffs = _load_coefficients(args.coeffs, cfg)
    log_spectral_stats(logger, "reconstruct:input", coeffs)

    batch = coeffs.shape[0] if coeffs.ndim == 2 else 1
    C = coeffs.shape[-1]
    device = cfg.torch_device
    points = torch.zeros(batch * X * Y, 3, dtype=cfg.dtype, device=device)
    indices = torch.zeros(batch * 6 * X * Y, dtype=torch.int64, device=device)

    if coeffs.ndim == 2:
        sample_sums((batch, 1, 1), C, (X, Y), coeffs, points, indices, config=cfg, logger=logger)
    else:
        sample_sum(C, (X, Y), coeffs, points, indices, config=cfg, logger=logger)
    synchronize(device)
    return {
        "coefficient_count": C,
        "instances": batch,
        "tessellations": [X, Y],
        "outputs": {
            "points": _save_buffer(out, "points", points, logger),
            "indices": _save_buffer(out, "indices", indices, logger),
        },
    }


def _cmd_matrix(args: argparse.Namespace, cfg: KernelConfig, logger: JsonlLogger, out: Path) -> Dict[str, Any]:
    if args.directions is not None:
        arr = np.load(Path(args.directions).expanduser())
        vectors = torch.as_tensor(arr, dtype=cfg.dtype, device=cfg.torch_device).contiguous()
    else:
        vectors = _random_directions(args.count, cfg)

    V = int(vectors.shape[0])
    C = coefficient_count(args.max_l)
    buffer = torch.zeros(V * C, dtype=cfg.dtype, device=cfg.torch_device)
    calculate_matrix(V, C, vectors, buffer, config=cfg, logger=logger)
    synchronize(cfg.torch_device)

    outputs = {"matrix": _save_buffer(out, "matrix", buffer.view(C, V).T, logger)}
    if args.directions is None:
        outputs["directions"] = _save_buffer(out, "directions", vectors, logger)
    return {"max_l": args.max_l, "vector_count": V, "coefficient_count": C, "outputs": outputs}


def _cmd_product(args: argparse.Namespace, cfg: KernelConfig, logger: JsonlLogger, out: Path) -> Dict[str, Any]:
    lhs = _load_coefficients(args.lhs, cfg)
    rhs = _load_coefficients(args.rhs, cfg)
    if lhs.shape != rhs.shape:
        raise ValueError(f"lhs and rhs shapes differ: {tuple(lhs.shape)} vs {tuple(rhs.shape)}")
    log_spectral_stats(logger, "product:lhs", lhs)
    log_spectral_stats(logger, "product:rhs", rhs)

    C = lhs.shape[-1]
    result = torch.zeros(lhs.shape, dtype=cfg.atomics_dtype, device=cfg.torch_device)
    if lhs.ndim == 2:
        product_batched((lhs.shape[0], 1, 1), C, lhs, rhs, result, config=cfg, logger=logger)
    else:
        product(C, lhs, rhs, result, config=cfg, logger=logger)
    synchronize(cfg.torch_device)

    log_spectral_stats(logger, "product:out", result)
    return {
        "coefficient_count": C,
        "instances": lhs.shape[0] if lhs.ndim == 2 else 1,
        "outputs": {"product": _save_buffer(out, "product", result, logger)},
    }


# ------------------------
# Command boundary
# ------------------------


def _run(args: argparse.Namespace, command: Callable[..., Dict[str, Any]]) -> int:
    out = Path(args.out).expanduser().resolve()
    out.mkdir(parents=True, exist_ok=True)
    os.environ["SHK_RUN_DIR"] = str(out)

    logger = JsonlLogger(out)
    run_id = str(uuid.uuid4())
    manifest: Dict[str, Any] = {
        "run_id": run_id,
        "cmd": args.cmd,
        "seed": int(args.seed),
        "run_status": "pending",
    }
    exit_code = 1

    try:
        cfg = load_config(args.config, device=args.device, precision=args.precision)
        log_runtime_environment(logger, config=cfg.to_dict())
        manifest["config"] = {k: str(v) for k, v in cfg.to_dict().items()}
        manifest["device"] = str(cfg.torch_device)
        logger.info("shkernels run started.", run_id=run_id, cmd=args.cmd)
        _set_seeds(int(args.seed), logger)

        t0 = time.perf_counter()
        logger.phase_start(args.cmd)
        manifest.update(command(args, cfg, logger, out))
        logger.phase_end(args.cmd, elapsed_s=time.perf_counter() - t0)
        log_peak_vram(logger, phase=args.cmd)

        manifest["run_status"] = "success"
        exit_code = 0
        logger.info("shkernels run completed.", exit_code=exit_code)
    except Exception as exc:
        logger.error("shkernels run failed.", error=str(exc), exc_info=True)
        print(f"ERROR: {exc}", file=sys.stderr)
        manifest["run_status"] = "error"
        manifest["error"] = str(exc)
        exit_code = 1
    finally:
        try:
            _atomic_write_json(out / "manifest.json", manifest)
        except OSError as exc:
            logger.warning("Failed to write manifest.", error=str(exc))
        logger.close()

    return exit_code


# ------------------------
# CLI entrypoint
# ------------------------


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Spherical-harmonic kernels (sampling, design matrices, products)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=DEFAULT_SEED,
        help="Master RNG seed.",
    )
    parser.add_argument(
        "--device",
        default=None,
        help="Torch device ('auto', 'cpu', 'cuda', 'cuda:1', ...).",
    )
    parser.add_argument(
        "--precision",
        choices=["single", "double"],
        default=None,
        help="Buffer precision (float32 / float64).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="KernelConfig file (JSON or YAML); CLI options override it.",
    )

    subparsers = parser.add_subparsers(dest="cmd", required=True)

    sp = subparsers.add_parser("sample", help="Sample a single basis function Y_l^m.")
    sp.add_argument("--l", type=int, required=True, help="Degree.")
    sp.add_argument("--m", type=int, required=True, help="Order, -l <= m <= l.")
    sp.add_argument("--tess", type=int, nargs=2, metavar=("X", "Y"), required=True,
                    help="Longitude x latitude tessellation.")
    sp.add_argument("--out", required=True, help="Output directory.")
    sp.set_defaults(func=lambda a: _run(a, _cmd_sample))

    rp = subparsers.add_parser("reconstruct", help="Reconstruct coefficient vectors on a tessellation.")
    rp.add_argument("--coeffs", required=True, help=".npy file, shape (C,) or (B, C).")
    rp.add_argument("--tess", type=int, nargs=2, metavar=("X", "Y"), required=True,
                    help="Longitude x latitude tessellation.")
    rp.add_argument("--out", required=True, help="Output directory.")
    rp.set_defaults(func=lambda a: _run(a, _cmd_reconstruct))

    mp = subparsers.add_parser("matrix", help="Build a design matrix.")
    mp.add_argument("--max-l", dest="max_l", type=int, required=True, help="Maximum degree.")
    src = mp.add_mutually_exclusive_group(required=True)
    src.add_argument("--directions", default=None, help=".npy file of (N, 3) (r, theta, phi) records.")
    src.add_argument("--count", type=int, default=None, help="Number of random unit directions.")
    mp.add_argument("--out", required=True, help="Output directory.")
    mp.set_defaults(func=lambda a: _run(a, _cmd_matrix))

    pp = subparsers.add_parser("product", help="Coupled product of two coefficient vectors.")
    pp.add_argument("--lhs", required=True, help=".npy file, shape (C,) or (B, C).")
    pp.add_argument("--rhs", required=True, help=".npy file, same shape as --lhs.")
    pp.add_argument("--out", required=True, help="Output directory.")
    pp.set_defaults(func=lambda a: _run(a, _cmd_product))

    args = parser.parse_args(argv)
    if hasattr(args, "func"):
        return int(args.func(args))
    return 1


if __name__ == "__main__":
    sys.exit(main())
