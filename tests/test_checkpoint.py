"""
Unit Tests for Raw Binary Checkpoint Loading
============================================

Synthetic parameter dumps are written to ``tmp_path`` and loaded back.
"""

import os

import numpy as np
import torch
import pytest

import vit_block.checkpoint as checkpoint
from vit_block.checkpoint import (
    CheckpointError,
    CheckpointNotFoundError,
    CheckpointShapeError,
    checkpoint_files,
    load_block,
    read_floats,
    save_block,
)
from vit_block.config import BlockConfig
from vit_block.model import VisionTransformerBlock


# ── Test Fixtures ────────────────────────────────────────────────────

SMALL = BlockConfig(model_dim=16, head_dim=4, mlp_dim=32, num_heads=4)


def write_dump(prefix, config, seed=0):
    """Write one synthetic file per parameter; return the flat arrays by suffix."""
    rng = np.random.default_rng(seed)
    arrays = {}
    for param_file in checkpoint_files(config):
        if param_file.suffix.startswith(".attn.qkv"):
            values = np.arange(param_file.numel, dtype="<f4")
        else:
            values = rng.standard_normal(param_file.numel).astype("<f4")
        values.tofile(f"{prefix}{param_file.suffix}")
        arrays[param_file.suffix] = values
    return arrays


@pytest.fixture
def prefix(tmp_path):
    return str(tmp_path / "blocks.0")


# ── File Table ───────────────────────────────────────────────────────


class TestCheckpointFiles:
    def test_vit_base_shapes(self):
        shapes = {f.suffix: f.shape for f in checkpoint_files(BlockConfig.vit_base())}
        assert shapes == {
            ".mlp.fc1.weight.bin": (3072, 768),
            ".mlp.fc1.bias.bin": (3072,),
            ".mlp.fc2.weight.bin": (768, 3072),
            ".mlp.fc2.bias.bin": (768,),
            ".attn.qkv.weight.bin": (2304, 768),
            ".attn.qkv.bias.bin": (2304,),
            ".attn.proj.weight.bin": (768, 768),
            ".attn.proj.bias.bin": (768,),
            ".norm1.weight.bin": (768,),
            ".norm1.bias.bin": (768,),
            ".norm2.weight.bin": (768,),
            ".norm2.bias.bin": (768,),
        }


class TestReadFloats:
    def test_reads_little_endian_float32(self, tmp_path):
        path = tmp_path / "x.bin"
        path.write_bytes(np.array([1.5, -2.0, 3.25], dtype="<f4").tobytes())
        assert read_floats(path, 3).tolist() == [1.5, -2.0, 3.25]

    def test_wrong_count(self, tmp_path):
        path = tmp_path / "x.bin"
        path.write_bytes(np.zeros(4, dtype="<f4").tobytes())
        with pytest.raises(CheckpointShapeError) as excinfo:
            read_floats(path, 5)
        assert excinfo.value.expected == 5
        assert excinfo.value.actual == 4
        assert "x.bin" in str(excinfo.value)

    def test_partial_float(self, tmp_path):
        path = tmp_path / "x.bin"
        path.write_bytes(b"\x00" * 10)
        with pytest.raises(CheckpointShapeError):
            read_floats(path, 2)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CheckpointNotFoundError) as excinfo:
            read_floats(tmp_path / "missing.bin", 1)
        assert isinstance(excinfo.value, CheckpointError)
        assert isinstance(excinfo.value.__cause__, OSError)


# ── Loading ──────────────────────────────────────────────────────────


class TestLoadBlock:
    def test_qkv_split_into_contiguous_row_slices(self, prefix):
        arrays = write_dump(prefix, SMALL)
        block = load_block(prefix, config=SMALL)

        a, d = SMALL.attn_dim, SMALL.model_dim
        fused_w = torch.from_numpy(arrays[".attn.qkv.weight.bin"].astype(np.float32)).reshape(3 * a, d)
        fused_b = torch.from_numpy(arrays[".attn.qkv.bias.bin"].astype(np.float32))
        for i, layer in enumerate((block.attn.query, block.attn.key, block.attn.value)):
            assert torch.equal(layer.weight, fused_w[i * a:(i + 1) * a])
            assert torch.equal(layer.bias, fused_b[i * a:(i + 1) * a])

    def test_row_major_shapes(self, prefix):
        arrays = write_dump(prefix, SMALL)
        block = load_block(prefix, config=SMALL)
        fc1 = arrays[".mlp.fc1.weight.bin"].reshape(SMALL.mlp_dim, SMALL.model_dim)
        assert np.array_equal(block.mlp.fc1.weight.numpy(), fc1)
        assert np.array_equal(block.norm2.bias.numpy(), arrays[".norm2.bias.bin"])
        assert np.array_equal(block.norm1.weight.numpy(), arrays[".norm1.weight.bin"])

    def test_parameters_are_frozen(self, prefix):
        write_dump(prefix, SMALL)
        block = load_block(prefix, config=SMALL)
        assert not any(p.requires_grad for p in block.parameters())

    def test_parameter_order_matches_random_init(self, prefix):
        write_dump(prefix, SMALL)
        loaded = [(n, tuple(p.shape)) for n, p in load_block(prefix, config=SMALL).named_parameters()]
        fresh = [(n, tuple(p.shape)) for n, p in VisionTransformerBlock(SMALL).named_parameters()]
        assert loaded == fresh

    def test_loaded_block_runs(self, prefix):
        write_dump(prefix, SMALL)
        block = VisionTransformerBlock.from_checkpoint(prefix, config=SMALL)
        x = torch.randn(SMALL.model_dim, 7, 2)
        (out,) = block([x])
        assert out.shape == x.shape
        assert torch.all(torch.isfinite(out))

    def test_wrong_size_names_file(self, prefix):
        write_dump(prefix, SMALL)
        np.zeros(5, dtype="<f4").tofile(f"{prefix}.attn.proj.bias.bin")
        with pytest.raises(CheckpointShapeError) as excinfo:
            load_block(prefix, config=SMALL)
        assert excinfo.value.path.name.endswith(".attn.proj.bias.bin")

    def test_failure_constructs_no_block(self, prefix, monkeypatch):
        write_dump(prefix, SMALL)
        np.zeros(1, dtype="<f4").tofile(f"{prefix}.norm2.bias.bin")

        built = []
        monkeypatch.setattr(
            checkpoint, "VisionTransformerBlock",
            lambda *args, **kwargs: built.append(args) or VisionTransformerBlock(*args, **kwargs),
        )
        with pytest.raises(CheckpointShapeError):
            load_block(prefix, config=SMALL)
        assert built == []

    def test_missing_file(self, prefix):
        write_dump(prefix, SMALL)
        os.remove(f"{prefix}.mlp.fc2.weight.bin")
        with pytest.raises(CheckpointNotFoundError):
            load_block(prefix, config=SMALL)

    def test_default_config_is_vit_base(self, prefix):
        write_dump(prefix, BlockConfig.vit_base())
        block = load_block(prefix)
        assert block.config == BlockConfig.vit_base()
        assert tuple(block.attn.query.weight.shape) == (768, 768)
        assert tuple(block.mlp.fc1.weight.shape) == (3072, 768)

    def test_dump_for_other_layout_is_rejected(self, prefix):
        write_dump(prefix, SMALL)
        with pytest.raises(CheckpointShapeError):
            load_block(prefix)


# ── Saving ───────────────────────────────────────────────────────────


class TestSaveBlock:
    def test_save_then_load_reproduces_outputs(self, tmp_path):
        block = VisionTransformerBlock(SMALL)
        torch.nn.init.normal_(block.attn.key.bias)
        prefix = str(tmp_path / "export" / "blocks.3")
        written = save_block(block, prefix)
        assert len(written) == 12

        loaded = load_block(prefix, config=SMALL)
        x = torch.randn(SMALL.model_dim, 4, 3)
        assert torch.allclose(loaded([x])[0], block([x])[0], atol=1e-6)

    def test_qkv_file_is_stacked_projections(self, tmp_path):
        block = VisionTransformerBlock(SMALL)
        prefix = str(tmp_path / "blocks.0")
        save_block(block, prefix)
        raw = np.fromfile(f"{prefix}.attn.qkv.weight.bin", dtype="<f4")
        expected = torch.cat([block.attn.query.weight, block.attn.key.weight, block.attn.value.weight])
        assert np.array_equal(raw, expected.detach().numpy().ravel())
