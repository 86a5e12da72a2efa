from __future__ import annotations

import json

import pytest
import torch
import yaml

from shkernels.config import (
    DEFAULT_BLOCK_2D,
    DEFAULT_BLOCK_3D,
    KernelConfig,
    load_config,
    resolve_config,
)


def test_defaults():
    cfg = KernelConfig()
    assert cfg.precision == "single"
    assert cfg.dtype == torch.float32
    assert cfg.atomics_dtype == torch.float32
    assert cfg.block_2d == DEFAULT_BLOCK_2D == (16, 16, 1)
    assert cfg.block_3d == DEFAULT_BLOCK_3D == (8, 8, 8)
    assert cfg.batch_workers == 1
    assert isinstance(cfg.torch_device, torch.device)


def test_double_precision_derives_dtypes():
    cfg = KernelConfig(precision="double")
    assert cfg.dtype == torch.float64
    assert cfg.atomics_dtype == torch.float64


def test_float32_accumulator_with_double_buffers():
    cfg = KernelConfig(precision="double", atomics_dtype=torch.float32)
    assert cfg.dtype == torch.float64
    assert cfg.atomics_dtype == torch.float32


@pytest.mark.parametrize(
    "kwargs",
    [
        {"precision": "half"},
        {"dtype": torch.float16},
        {"block_2d": (16, 0, 1)},
        {"block_3d": (8, 8)},
        {"max_units_per_chunk": 0},
        {"batch_workers": 0},
    ],
)
def test_invalid_fields_rejected(kwargs):
    with pytest.raises(ValueError):
        KernelConfig(**kwargs)


def test_load_yaml(tmp_path):
    path = tmp_path / "kernels.yaml"
    path.write_text(
        yaml.safe_dump({"precision": "double", "block_2d": [8, 8, 1], "batch_workers": 2}),
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.dtype == torch.float64
    assert cfg.block_2d == (8, 8, 1)
    assert cfg.batch_workers == 2


def test_load_json_with_overrides(tmp_path):
    path = tmp_path / "kernels.json"
    path.write_text(json.dumps({"atomics_dtype": "float32", "device": "cpu"}), encoding="utf-8")
    cfg = load_config(path, precision="double", device=None)
    assert cfg.dtype == torch.float64
    assert cfg.atomics_dtype == torch.float32
    assert cfg.torch_device == torch.device("cpu")


def test_load_mapping_and_empty_file(tmp_path):
    assert load_config({"max_units_per_chunk": 128}).max_units_per_chunk == 128
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config(empty) == KernelConfig()


def test_load_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")
    with pytest.raises(ValueError):
        load_config({"tile": 4})
    with pytest.raises(ValueError):
        load_config({"dtype": "bfloat16"})


def test_resolve_config():
    cfg = KernelConfig(batch_workers=3)
    assert resolve_config(cfg) is cfg
    assert resolve_config(None) == KernelConfig()
