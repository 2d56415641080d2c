"""
Configuration System
====================

Defines the ``BlockConfig`` dataclass that holds every hyperparameter of a
single Vision Transformer encoder block.  Supports three override layers:

    defaults → YAML file → CLI arguments

Usage::

    # From code
    cfg = BlockConfig(model_dim=384, head_dim=64, num_heads=6, mlp_dim=1536)

    # The layout used by released ViT-Base checkpoints
    cfg = BlockConfig.vit_base()

    # From YAML
    cfg = BlockConfig.from_yaml("configs/vit_base.yaml")

    # From CLI (auto-generates argparse flags for every field)
    cfg = BlockConfig.from_cli()
"""

from __future__ import annotations

import argparse
import yaml
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Optional, Sequence


@dataclass
class BlockConfig:
    """Complete configuration for one encoder block.

    Attributes
    ----------
    model_dim : int
        Width of the token embeddings entering and leaving the block.
    head_dim : int
        Width of each attention head.
    mlp_dim : int
        Hidden width of the feed-forward sublayer.
    num_heads : int
        Number of attention heads.  ``head_dim * num_heads`` does not have
        to equal ``model_dim``; the output projection maps back.
    dropout : float
        Elementwise dropout probability (attention output and MLP).
    layerdrop : float
        Drop-path probability: chance that a whole residual branch is
        skipped for one sample.
    norm_eps : float
        Epsilon of both layer normalizations.
    init_std : float
        Standard deviation of the truncated-normal weight initialization.
    """

    # ── Architecture ─────────────────────────────────────────────────
    model_dim: int = 768
    head_dim: int = 64
    mlp_dim: int = 3072
    num_heads: int = 12

    # ── Regularization ───────────────────────────────────────────────
    dropout: float = 0.0
    layerdrop: float = 0.0

    # ── Numerics ─────────────────────────────────────────────────────
    norm_eps: float = 1e-6
    init_std: float = 0.02

    def __post_init__(self) -> None:
        for name in ("model_dim", "head_dim", "mlp_dim", "num_heads"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        for name in ("dropout", "layerdrop"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value!r}")
        if self.norm_eps <= 0:
            raise ValueError(f"norm_eps must be positive, got {self.norm_eps!r}")
        if self.init_std <= 0:
            raise ValueError(f"init_std must be positive, got {self.init_std!r}")

    @property
    def attn_dim(self) -> int:
        """Total width of the concatenated attention heads."""
        return self.head_dim * self.num_heads

    @classmethod
    def vit_base(cls) -> "BlockConfig":
        """Return the ViT-Base/16 block layout (768 wide, 12 heads of 64).

        This is the layout expected by :func:`vit_block.checkpoint.load_block`
        when no config is given.
        """
        return cls(
            model_dim=768,
            head_dim=768 // 12,
            mlp_dim=768 * 4,
            num_heads=12,
            dropout=0.0,
            layerdrop=0.0,
        )

    # ── Serialization ────────────────────────────────────────────────

    def to_dict(self) -> dict:
        """Convert config to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "BlockConfig":
        """Load config from a YAML file, falling back to defaults for
        any missing keys.

        Parameters
        ----------
        path : str or Path
            Path to the YAML configuration file.
        """
        with open(path, "r") as f:
            overrides = yaml.safe_load(f) or {}
        valid_fields = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in overrides.items() if k in valid_fields}
        return cls(**filtered)

    @classmethod
    def from_cli(cls, argv: Optional[Sequence[str]] = None) -> "BlockConfig":
        """Build config from command-line arguments.

        Every dataclass field becomes a CLI flag.  If ``--config`` is
        provided, YAML values are loaded first, then CLI flags override.

        Parameters
        ----------
        argv : sequence of str, optional
            Arguments to parse.  Defaults to ``sys.argv[1:]``.

        Returns
        -------
        BlockConfig
            Merged configuration.
        """
        parser = argparse.ArgumentParser(
            description="Vision Transformer Block Configuration",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        add_config_arguments(parser)
        args = parser.parse_args(argv)
        return cls.from_namespace(args)

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "BlockConfig":
        """Merge defaults, an optional ``args.config`` YAML file and the
        non-None field flags of a parsed namespace."""
        # Layer 1: defaults
        config_dict = {}

        # Layer 2: YAML overrides
        if getattr(args, "config", None):
            with open(args.config, "r") as f:
                yaml_cfg = yaml.safe_load(f) or {}
            valid_fields = {f.name for f in fields(cls)}
            config_dict.update({k: v for k, v in yaml_cfg.items() if k in valid_fields})

        # Layer 3: CLI overrides (only non-None values)
        for f in fields(cls):
            cli_val = getattr(args, f.name, None)
            if cli_val is not None:
                config_dict[f.name] = cli_val

        return cls(**config_dict)


def add_config_arguments(parser: argparse.ArgumentParser) -> None:
    """Register ``--config`` plus one flag per ``BlockConfig`` field."""
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to YAML config file (values override defaults, CLI overrides YAML)",
    )

    # Auto-generate a flag for every dataclass field
    for f in fields(BlockConfig):
        flag = f"--{f.name}"
        if f.type in ("int",) or f.type is int:
            parser.add_argument(flag, type=int, default=None)
        elif f.type in ("float",) or f.type is float:
            parser.add_argument(flag, type=float, default=None)
        else:
            parser.add_argument(flag, type=str, default=None)
