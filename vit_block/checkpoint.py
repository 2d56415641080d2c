"""
Raw Binary Checkpoints
======================

Reads and writes one encoder block as a set of headerless binary files,
one per parameter tensor, each holding little-endian float32 values in
row-major order::

    <prefix>.mlp.fc1.weight.bin    (mlp_dim, model_dim)
    <prefix>.mlp.fc1.bias.bin      (mlp_dim,)
    <prefix>.mlp.fc2.weight.bin    (model_dim, mlp_dim)
    <prefix>.mlp.fc2.bias.bin      (model_dim,)
    <prefix>.attn.qkv.weight.bin   (3 * attn_dim, model_dim)   Q, K, V stacked
    <prefix>.attn.qkv.bias.bin     (3 * attn_dim,)
    <prefix>.attn.proj.weight.bin  (model_dim, attn_dim)
    <prefix>.attn.proj.bias.bin    (model_dim,)
    <prefix>.norm1.weight.bin      (model_dim,)
    <prefix>.norm1.bias.bin        (model_dim,)
    <prefix>.norm2.weight.bin      (model_dim,)
    <prefix>.norm2.bias.bin        (model_dim,)

The files carry no shape information; the only check possible is the
element count, which must match the configured shape exactly.

Usage::

    block = load_block("weights/blocks.0")            # ViT-Base layout
    save_block(block, "export/blocks.0")
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import torch

from vit_block.config import BlockConfig
from vit_block.model import KeepMaskSampler, VisionTransformerBlock

logger = logging.getLogger(__name__)

_FLOAT32_LE = np.dtype("<f4")

QKV_WEIGHT = ".attn.qkv.weight.bin"
QKV_BIAS = ".attn.qkv.bias.bin"


class CheckpointError(RuntimeError):
    """Base class for checkpoint loading failures."""


class CheckpointNotFoundError(CheckpointError):
    """A parameter file is missing or cannot be read."""


class CheckpointShapeError(CheckpointError):
    """A parameter file does not hold the expected number of floats."""

    def __init__(self, path: Path, expected: int, actual: float) -> None:
        self.path = Path(path)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{self.path.name}: expected {expected} float32 values, found {actual:g}"
        )


class ParamFile(NamedTuple):
    """One parameter file: its name suffix and row-major shape."""

    suffix: str
    shape: Tuple[int, ...]

    @property
    def numel(self) -> int:
        return math.prod(self.shape)


def checkpoint_files(config: BlockConfig) -> List[ParamFile]:
    """Return the ordered list of parameter files for ``config``."""
    d, a, m = config.model_dim, config.attn_dim, config.mlp_dim
    return [
        ParamFile(".mlp.fc1.weight.bin", (m, d)),
        ParamFile(".mlp.fc1.bias.bin", (m,)),
        ParamFile(".mlp.fc2.weight.bin", (d, m)),
        ParamFile(".mlp.fc2.bias.bin", (d,)),
        ParamFile(QKV_WEIGHT, (3 * a, d)),
        ParamFile(QKV_BIAS, (3 * a,)),
        ParamFile(".attn.proj.weight.bin", (d, a)),
        ParamFile(".attn.proj.bias.bin", (d,)),
        ParamFile(".norm1.weight.bin", (d,)),
        ParamFile(".norm1.bias.bin", (d,)),
        ParamFile(".norm2.weight.bin", (d,)),
        ParamFile(".norm2.bias.bin", (d,)),
    ]


def read_floats(path: str | Path, expected_count: int) -> np.ndarray:
    """Read a headerless little-endian float32 file.

    Parameters
    ----------
    path : str or Path
        File to read.
    expected_count : int
        Number of floats the file must contain.

    Returns
    -------
    np.ndarray
        Flat, read-only array of ``expected_count`` values.

    Raises
    ------
    CheckpointNotFoundError
        If the file cannot be opened or read.
    CheckpointShapeError
        If the file size is not exactly ``expected_count`` floats.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise CheckpointNotFoundError(f"cannot read checkpoint file {path}") from e

    if len(raw) != expected_count * _FLOAT32_LE.itemsize:
        raise CheckpointShapeError(path, expected_count, len(raw) / _FLOAT32_LE.itemsize)

    return np.frombuffer(raw, dtype=_FLOAT32_LE)


def _read_tensors(prefix: str, config: BlockConfig) -> Dict[str, torch.Tensor]:
    tensors = {}
    for param_file in checkpoint_files(config):
        path = Path(f"{prefix}{param_file.suffix}")
        values = read_floats(path, param_file.numel)
        # astype() copies into a writable, native-endian buffer
        tensors[param_file.suffix] = torch.from_numpy(values.astype(np.float32)).reshape(param_file.shape)
        logger.debug("Read %s %s", path, param_file.shape)
    return tensors


def load_block(
    prefix: str,
    config: Optional[BlockConfig] = None,
    mask_sampler: Optional[KeepMaskSampler] = None,
) -> VisionTransformerBlock:
    """Build a frozen encoder block from a raw binary parameter dump.

    Every file is read and validated before the block is created, so a
    failure never leaves a partially loaded block behind.  The fused QKV
    weight is split along its rows into three contiguous ranges
    ``[0, A)``, ``[A, 2A)``, ``[2A, 3A)`` for query, key and value.

    Parameters
    ----------
    prefix : str
        Path prefix the file suffixes are appended to, e.g.
        ``"weights/blocks.0"``.
    config : BlockConfig, optional
        Expected layout.  Defaults to :meth:`BlockConfig.vit_base`.
    mask_sampler : KeepMaskSampler, optional
        Drop-path mask source for the new block.

    Returns
    -------
    VisionTransformerBlock
        Block with all parameters loaded and ``requires_grad=False``.
    """
    config = config or BlockConfig.vit_base()
    logger.info("Loading block parameters from %s*", prefix)
    tensors = _read_tensors(prefix, config)

    block = VisionTransformerBlock(config, mask_sampler=mask_sampler, _initialize=False)
    layers = block.sublayers()

    layers["w1"].set_params(tensors[".mlp.fc1.weight.bin"], tensors[".mlp.fc1.bias.bin"])
    layers["w2"].set_params(tensors[".mlp.fc2.weight.bin"], tensors[".mlp.fc2.bias.bin"])

    # Row slices are views into the fused tensors
    a = config.attn_dim
    qkv_w, qkv_b = tensors[QKV_WEIGHT], tensors[QKV_BIAS]
    for i, name in enumerate(("wq", "wk", "wv")):
        rows = slice(i * a, (i + 1) * a)
        layers[name].set_params(qkv_w[rows], qkv_b[rows])

    layers["wf"].set_params(tensors[".attn.proj.weight.bin"], tensors[".attn.proj.bias.bin"])

    for name in ("norm1", "norm2"):
        layers[name].set_param(0, tensors[f".{name}.weight.bin"])
        layers[name].set_param(1, tensors[f".{name}.bias.bin"])

    block.freeze()
    logger.info("Loaded %d parameters from %s*", sum(p.numel() for p in block.parameters()), prefix)
    return block


def _write_floats(path: Path, tensor: torch.Tensor) -> None:
    values = tensor.detach().to("cpu", torch.float32).contiguous().numpy().astype(_FLOAT32_LE)
    with open(path, "wb") as f:
        f.write(values.tobytes())


def save_block(block: VisionTransformerBlock, prefix: str) -> List[Path]:
    """Write ``block`` in the raw binary layout read by :func:`load_block`.

    Query, key and value are stacked back into the fused QKV files.

    Returns
    -------
    list of Path
        The files written, in :func:`checkpoint_files` order.
    """
    layers = block.sublayers()
    q, k, v = layers["wq"], layers["wk"], layers["wv"]
    tensors = {
        ".mlp.fc1.weight.bin": layers["w1"].weight,
        ".mlp.fc1.bias.bin": layers["w1"].bias,
        ".mlp.fc2.weight.bin": layers["w2"].weight,
        ".mlp.fc2.bias.bin": layers["w2"].bias,
        QKV_WEIGHT: torch.cat([q.weight, k.weight, v.weight], dim=0),
        QKV_BIAS: torch.cat([q.bias, k.bias, v.bias], dim=0),
        ".attn.proj.weight.bin": layers["wf"].weight,
        ".attn.proj.bias.bin": layers["wf"].bias,
        ".norm1.weight.bin": layers["norm1"].weight,
        ".norm1.bias.bin": layers["norm1"].bias,
        ".norm2.weight.bin": layers["norm2"].weight,
        ".norm2.bias.bin": layers["norm2"].bias,
    }

    Path(f"{prefix}").parent.mkdir(parents=True, exist_ok=True)
    written = []
    for param_file in checkpoint_files(block.config):
        path = Path(f"{prefix}{param_file.suffix}")
        _write_floats(path, tensors[param_file.suffix])
        written.append(path)
    logger.info("Saved block parameters to %s* (%d files)", prefix, len(written))
    return written
