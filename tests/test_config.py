"""
Unit Tests for BlockConfig
==========================
"""

import pytest

from vit_block.config import BlockConfig


class TestBlockConfig:
    def test_defaults_are_vit_base(self):
        assert BlockConfig() == BlockConfig.vit_base()
        cfg = BlockConfig.vit_base()
        assert (cfg.model_dim, cfg.head_dim, cfg.mlp_dim, cfg.num_heads) == (768, 64, 3072, 12)
        assert cfg.dropout == 0.0 and cfg.layerdrop == 0.0
        assert cfg.norm_eps == 1e-6

    def test_attn_dim(self):
        assert BlockConfig(model_dim=32, head_dim=6, num_heads=3).attn_dim == 18

    @pytest.mark.parametrize("field,value", [
        ("model_dim", 0),
        ("num_heads", -1),
        ("dropout", 1.5),
        ("layerdrop", -0.1),
        ("norm_eps", 0.0),
        ("model_dim", 32.0),
        ("num_heads", True),
    ])
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(ValueError, match=field):
            BlockConfig(**{field: value})

    def test_from_yaml_ignores_unknown_keys(self, tmp_path):
        path = tmp_path / "cfg.yaml"
        path.write_text("model_dim: 384\nnum_heads: 6\nmlp_dim: 1536\nvocab_size: 10\n")
        cfg = BlockConfig.from_yaml(path)
        assert (cfg.model_dim, cfg.num_heads, cfg.mlp_dim) == (384, 6, 1536)
        assert cfg.head_dim == 64

    def test_from_yaml_rejects_float_width(self, tmp_path):
        path = tmp_path / "cfg.yaml"
        path.write_text("model_dim: 768.0\n")
        with pytest.raises(ValueError, match="model_dim"):
            BlockConfig.from_yaml(path)

    def test_from_yaml_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert BlockConfig.from_yaml(path) == BlockConfig()

    def test_cli_overrides_yaml(self, tmp_path):
        path = tmp_path / "cfg.yaml"
        path.write_text("model_dim: 384\ndropout: 0.1\n")
        cfg = BlockConfig.from_cli(["--config", str(path), "--dropout", "0.2", "--num_heads", "6"])
        assert cfg.model_dim == 384
        assert cfg.dropout == 0.2
        assert cfg.num_heads == 6

    def test_to_dict_roundtrip(self):
        cfg = BlockConfig(model_dim=64, head_dim=16, num_heads=4, mlp_dim=256, layerdrop=0.1)
        assert BlockConfig(**cfg.to_dict()) == cfg
