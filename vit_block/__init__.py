"""
Vision Transformer Block
========================

A single pre-norm Vision Transformer encoder block built from scratch in
PyTorch, with a loader for raw per-parameter float32 weight dumps.

Features:
    - Multi-Head Self-Attention with separate Q/K/V projections
    - Tanh-approximated GELU feed-forward network
    - Channel-axis LayerNorm (pre-norm residuals)
    - Stochastic depth (drop path) with injectable mask source
    - Raw binary checkpoint loading, including fused QKV splitting
"""

__version__ = "1.0.0"

from vit_block.config import BlockConfig
from vit_block.model import (
    SUBLAYER_ORDER,
    DropPath,
    InputArityError,
    VisionTransformerBlock,
    gelu,
)
from vit_block.checkpoint import (
    CheckpointError,
    CheckpointNotFoundError,
    CheckpointShapeError,
    load_block,
    save_block,
)

__all__ = [
    "BlockConfig",
    "VisionTransformerBlock",
    "DropPath",
    "InputArityError",
    "SUBLAYER_ORDER",
    "gelu",
    "load_block",
    "save_block",
    "CheckpointError",
    "CheckpointNotFoundError",
    "CheckpointShapeError",
]
