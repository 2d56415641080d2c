"""
Vision Transformer Block, Built from Scratch
============================================

A single pre-norm Transformer encoder block as used by Vision Transformers,
written from first principles with ``torch.Tensor`` operations and
``nn.Parameter``.  No ``nn.Linear``, no ``nn.LayerNorm``, no
``nn.Dropout`` modules.

Layout
------
Activations are **channel-first**: ``(C, T, B)`` = (channels, sequence
length, batch).  Linear weights are stored ``(out, in)`` and act on the
channel axis.

Architecture Highlights
-----------------------
- **Pre-Norm** residual connections (LayerNorm before attention/MLP)
- **Tanh-approximated GELU** in the MLP
- **Three separate Q/K/V projections** with heads merged into the batch
  axis for one batched matmul
- **Stochastic depth** (drop path) on both residual branches
- **Explicit train/eval flag** passed to ``forward`` instead of hidden
  module state

References
----------
- Vaswani et al., "Attention Is All You Need" (2017)
- Hendrycks & Gimpel, "Gaussian Error Linear Units (GELUs)" (2016)
- Huang et al., "Deep Networks with Stochastic Depth" (2016)
- Dosovitskiy et al., "An Image is Worth 16x16 Words" (2020)
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import Callable, List, Optional, Sequence

import torch
import torch.nn as nn
import torch.nn.functional as F

from vit_block.config import BlockConfig

logger = logging.getLogger(__name__)

# Fixed parameter enumeration order, shared by every construction path.
SUBLAYER_ORDER = ("w1", "w2", "wq", "wk", "wv", "wf", "norm1", "norm2")

_GELU_C1 = math.sqrt(2.0 / math.pi)
_GELU_C2 = 0.044715


class InputArityError(ValueError):
    """Raised when ``forward`` does not receive exactly one input tensor."""


# ═══════════════════════════════════════════════════════════════════════
#  Primitive Layers
# ═══════════════════════════════════════════════════════════════════════


class Linear(nn.Module):
    """Affine projection over the channel axis: ``y = W x + b``.

    Parameters
    ----------
    in_features : int
        Size of the input channel dimension.
    out_features : int
        Size of the output channel dimension.
    device : torch.device, optional
        Device to place parameters on.
    dtype : torch.dtype, optional
        Data type for parameters.

    Shape
    -----
    - Input:  ``(in_features, *)``
    - Output: ``(out_features, *)``
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        self.weight = nn.Parameter(
            torch.empty(out_features, in_features, device=device, dtype=dtype)
        )
        self.bias = nn.Parameter(torch.empty(out_features, device=device, dtype=dtype))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Forward pass: contract ``W`` with the leading axis of ``x``.

        Parameters
        ----------
        x : torch.Tensor
            Input tensor of shape ``(in_features, *)``.

        Returns
        -------
        torch.Tensor
            Output tensor of shape ``(out_features, *)``.
        """
        y = torch.tensordot(self.weight, x, dims=([1], [0]))
        return y + self.bias.view(-1, *([1] * (x.dim() - 1)))

    def set_params(self, weight: torch.Tensor, bias: torch.Tensor) -> None:
        """Replace weight and bias with the given tensors (no copy).

        The new parameters keep the ``requires_grad`` flag of the ones they
        replace.  Use :meth:`VisionTransformerBlock.freeze` to freeze.
        """
        if tuple(weight.shape) != (self.out_features, self.in_features):
            raise ValueError(
                f"weight shape {tuple(weight.shape)} does not match "
                f"({self.out_features}, {self.in_features})"
            )
        if tuple(bias.shape) != (self.out_features,):
            raise ValueError(
                f"bias shape {tuple(bias.shape)} does not match ({self.out_features},)"
            )
        self.weight = nn.Parameter(weight, requires_grad=self.weight.requires_grad)
        self.bias = nn.Parameter(bias, requires_grad=self.bias.requires_grad)

    def extra_repr(self) -> str:
        return f"in_features={self.in_features}, out_features={self.out_features}"


class LayerNorm(nn.Module):
    """Layer Normalization over the channel axis.

    Formula::

        mean   = mean_c(x)
        var    = mean_c((x - mean)^2)
        output = (x - mean) / sqrt(var + eps) * weight + bias

    ``weight`` (scale) and ``bias`` (shift) are addressable by position:
    index ``0`` is the scale, index ``1`` the shift.

    Parameters
    ----------
    dim : int
        Number of channels.
    eps : float
        Small constant for numerical stability.

    Shape
    -----
    - Input:  ``(C, *)``
    - Output: ``(C, *)``
    """

    def __init__(
        self,
        dim: int,
        eps: float = 1e-6,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        super().__init__()
        self.dim = dim
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim, device=device, dtype=dtype))
        self.bias = nn.Parameter(torch.zeros(dim, device=device, dtype=dtype))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Normalize each token's channel vector.

        Statistics are computed in float32 and the result is cast back to
        the input dtype.
        """
        in_dtype = x.dtype
        x = x.to(torch.float32)

        mean = x.mean(dim=0, keepdim=True)
        centered = x - mean
        var = (centered * centered).mean(dim=0, keepdim=True)
        x = centered / torch.sqrt(var + self.eps)

        shape = (-1,) + (1,) * (x.dim() - 1)
        x = x * self.weight.view(shape) + self.bias.view(shape)
        return x.to(in_dtype)

    def set_param(self, index: int, value: torch.Tensor) -> None:
        """Replace the scale (``index=0``) or shift (``index=1``).

        The new parameter keeps the ``requires_grad`` flag of the old one.
        """
        if index not in (0, 1):
            raise IndexError(f"LayerNorm has 2 parameters, got index {index}")
        if tuple(value.shape) != (self.dim,):
            raise ValueError(f"parameter shape {tuple(value.shape)} does not match ({self.dim},)")
        name = "weight" if index == 0 else "bias"
        old = getattr(self, name)
        setattr(self, name, nn.Parameter(value, requires_grad=old.requires_grad))

    def extra_repr(self) -> str:
        return f"{self.dim}, eps={self.eps}"


def gelu(x: torch.Tensor) -> torch.Tensor:
    """Tanh approximation of the Gaussian Error Linear Unit::

        gelu(x) = 0.5 * x * (1 + tanh( sqrt(2/pi) * (x + 0.044715 * x^3) ))

    Output has the same shape and dtype as ``x``.
    """
    inner = _GELU_C1 * (x + _GELU_C2 * x * x * x)
    return 0.5 * x * (1.0 + torch.tanh(inner))


# ═══════════════════════════════════════════════════════════════════════
#  Attention
# ═══════════════════════════════════════════════════════════════════════


def softmax(x: torch.Tensor, dim: int) -> torch.Tensor:
    """Numerically stable softmax (from scratch).

    Subtracts the max value before exponentiation to prevent overflow::

        softmax(x)_i = exp(x_i - max(x)) / sum(exp(x_j - max(x)))
    """
    max_val = torch.max(x, dim=dim, keepdim=True).values
    num = torch.exp(x - max_val)
    den = torch.sum(num, dim=dim, keepdim=True)
    return num / den


def attention_scores(q: torch.Tensor, k: torch.Tensor) -> torch.Tensor:
    """Pre-softmax scores ``(q / sqrt(d)) @ k^T``.

    Parameters
    ----------
    q, k : torch.Tensor
        Queries and keys of shape ``(N, T, d)`` where ``N`` merges heads
        and batch.

    Returns
    -------
    torch.Tensor
        Scores of shape ``(N, T_q, T_k)``.
    """
    q = q / math.sqrt(q.shape[-1])
    return q @ k.transpose(-2, -1)


def scaled_dot_product_attention(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Scaled Dot-Product Attention.

    Computes::

        Attention(Q, K, V) = softmax(Q @ K^T / sqrt(d)) @ V

    The softmax runs along the key axis, so every query's weights sum
    to one.

    Parameters
    ----------
    q, k, v : torch.Tensor
        Tensors of shape ``(N, T, d)``.

    Returns
    -------
    tuple of torch.Tensor
        ``(output, weights)`` with shapes ``(N, T_q, d)`` and
        ``(N, T_q, T_k)``.
    """
    weights = softmax(attention_scores(q, k), dim=-1)
    return weights.to(v.dtype) @ v, weights


class MultiHeadSelfAttention(nn.Module):
    """Multi-Head Self-Attention with separate Q/K/V projections.

    Channel ``c`` of a projection belongs to head ``c // head_dim``.
    Heads are folded into the batch axis so all heads of all samples go
    through a single batched matmul.

    Parameters
    ----------
    model_dim : int
        Input and output channel width.
    head_dim : int
        Width of each head.
    num_heads : int
        Number of heads.
    dropout : float
        Dropout probability on the projected output.

    Shape
    -----
    - Input:  ``(model_dim, T, B)``
    - Output: ``(model_dim, T, B)``
    """

    def __init__(self, model_dim: int, head_dim: int, num_heads: int, dropout: float = 0.0) -> None:
        super().__init__()
        self.model_dim = model_dim
        self.head_dim = head_dim
        self.num_heads = num_heads
        self.dropout = dropout

        attn_dim = head_dim * num_heads
        self.query = Linear(model_dim, attn_dim)
        self.key = Linear(model_dim, attn_dim)
        self.value = Linear(model_dim, attn_dim)
        self.proj = Linear(attn_dim, model_dim)

    def _split_heads(self, x: torch.Tensor) -> torch.Tensor:
        # (H*d, T, B) -> (B*H, T, d)
        _, seq_len, batch_size = x.shape
        x = x.reshape(self.num_heads, self.head_dim, seq_len, batch_size)
        return x.permute(3, 0, 2, 1).reshape(batch_size * self.num_heads, seq_len, self.head_dim)

    def _merge_heads(self, x: torch.Tensor, batch_size: int) -> torch.Tensor:
        # (B*H, T, d) -> (H*d, T, B)
        _, seq_len, _ = x.shape
        x = x.reshape(batch_size, self.num_heads, seq_len, self.head_dim)
        return x.permute(1, 3, 2, 0).reshape(self.num_heads * self.head_dim, seq_len, batch_size)

    def _project(self, x: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        q = self._split_heads(self.query(x))
        k = self._split_heads(self.key(x))
        v = self._split_heads(self.value(x))
        return q, k, v

    def attention_weights(self, x: torch.Tensor) -> torch.Tensor:
        """Softmax-normalized attention weights of shape ``(B*H, T, T)``.

        Row ``n = b * num_heads + h`` holds head ``h`` of sample ``b``.
        """
        q, k, _ = self._project(x)
        return softmax(attention_scores(q, k), dim=-1)

    def forward(self, x: torch.Tensor, training: bool = False) -> torch.Tensor:
        """Compute self-attention over the sequence axis.

        Parameters
        ----------
        x : torch.Tensor
            Input of shape ``(model_dim, T, B)``.
        training : bool
            Enables dropout on the projected output.

        Returns
        -------
        torch.Tensor
            Output of shape ``(model_dim, T, B)``.
        """
        batch_size = x.shape[2]
        q, k, v = self._project(x)                                # (B*H, T, d)

        attn_output, _ = scaled_dot_product_attention(q, k, v)    # (B*H, T, d)
        attn_output = self._merge_heads(attn_output, batch_size)  # (H*d, T, B)

        out = self.proj(attn_output)                              # (model_dim, T, B)
        return F.dropout(out, self.dropout, training=training)


# ═══════════════════════════════════════════════════════════════════════
#  Feed-Forward Network
# ═══════════════════════════════════════════════════════════════════════


class MLP(nn.Module):
    """Position-wise feed-forward sublayer::

        fc1 -> GELU -> Dropout -> fc2 -> Dropout

    The two dropouts draw independent masks.

    Shape
    -----
    - Input:  ``(model_dim, T, B)``
    - Output: ``(model_dim, T, B)``
    """

    def __init__(self, model_dim: int, mlp_dim: int, dropout: float = 0.0) -> None:
        super().__init__()
        self.dropout = dropout
        self.fc1 = Linear(model_dim, mlp_dim)
        self.fc2 = Linear(mlp_dim, model_dim)

    def forward(self, x: torch.Tensor, training: bool = False) -> torch.Tensor:
        x = gelu(self.fc1(x))                                # (mlp_dim, T, B)
        x = F.dropout(x, self.dropout, training=training)
        x = self.fc2(x)                                      # (model_dim, T, B)
        return F.dropout(x, self.dropout, training=training)


# ═══════════════════════════════════════════════════════════════════════
#  Stochastic Depth
# ═══════════════════════════════════════════════════════════════════════


# (batch_size, keep_prob, dtype, device) -> 0/1 tensor of shape (batch_size,)
KeepMaskSampler = Callable[[int, float, torch.dtype, torch.device], torch.Tensor]


def bernoulli_keep_mask(
    batch_size: int,
    keep_prob: float,
    dtype: torch.dtype,
    device: torch.device,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """Draw one Bernoulli(keep_prob) keep decision per sample.

    Bind ``generator`` with ``functools.partial`` for reproducible masks.
    """
    u = torch.rand(batch_size, generator=generator, device=device)
    return (u < keep_prob).to(dtype)


class DropPath(nn.Module):
    """Stochastic depth: drop a whole residual branch per sample.

    In training mode one keep decision is drawn per batch sample, the
    mask is divided by the realized keep ratio (the fraction of samples
    kept in this batch) and broadcast over channels and sequence.  In
    evaluation mode the input is returned unchanged.

    If every sample of a batch is dropped the keep ratio is zero.  The
    ratio is clamped to the smallest positive float, so the branch then
    contributes exactly zero instead of NaN.

    Parameters
    ----------
    p : float
        Probability of dropping a sample's branch.
    sampler : KeepMaskSampler, optional
        Source of keep masks.  Defaults to :func:`bernoulli_keep_mask`.

    Shape
    -----
    - Input:  ``(C, T, B)``
    - Output: ``(C, T, B)``
    """

    def __init__(self, p: float = 0.0, sampler: Optional[KeepMaskSampler] = None) -> None:
        super().__init__()
        self.p = p
        self.sampler = sampler or bernoulli_keep_mask

    def forward(self, x: torch.Tensor, training: bool = False) -> torch.Tensor:
        if not training:
            return x

        batch_size = x.shape[-1]
        keep_mask = self.sampler(batch_size, 1.0 - self.p, torch.float32, x.device)
        keep_mask = keep_mask.detach().to(torch.float32).reshape((1,) * (x.dim() - 1) + (batch_size,))

        keep_ratio = keep_mask.mean()
        if logger.isEnabledFor(logging.DEBUG) and keep_ratio.item() == 0.0:
            logger.debug("DropPath dropped all %d samples of the batch", batch_size)
        keep_mask = keep_mask / keep_ratio.clamp_min(torch.finfo(torch.float32).tiny)

        return x * keep_mask.to(x.dtype)

    def extra_repr(self) -> str:
        return f"p={self.p}"


# ═══════════════════════════════════════════════════════════════════════
#  Parameter Initialization
# ═══════════════════════════════════════════════════════════════════════


def param_init(m: nn.Module, std: float = 0.02) -> None:
    """Initialize parameters.

    - **Linear layers**: weights truncated normal ``N(0, std)`` clipped at
      ±2σ, biases zero
    - **LayerNorm**: scale ones, shift zeros

    Parameters
    ----------
    m : nn.Module
        Module to initialize (called via ``model.apply(param_init)``).
    std : float
        Standard deviation for linear weights.
    """
    if isinstance(m, Linear):
        torch.nn.init.trunc_normal_(m.weight, 0.0, std, -2 * std, 2 * std)
        torch.nn.init.zeros_(m.bias)
    elif isinstance(m, LayerNorm):
        torch.nn.init.ones_(m.weight)
        torch.nn.init.zeros_(m.bias)


# ═══════════════════════════════════════════════════════════════════════
#  Transformer Block
# ═══════════════════════════════════════════════════════════════════════


class VisionTransformerBlock(nn.Module):
    """Single Vision Transformer Encoder Block.

    Architecture (Pre-Norm Residual)::

        x ──→ LayerNorm ──→ Self-Attention ──→ DropPath ──→ (+) ──→
        │                                                    ↑
        └────────────────────────────────────────────────────┘
              ──→ LayerNorm ──→ MLP ──→ DropPath ──→ (+) ──→
              │                                      ↑
              └──────────────────────────────────────┘

    Sublayers are registered as ``w1, w2, wq, wk, wv, wf, norm1, norm2``
    (see ``SUBLAYER_ORDER``), which fixes the order of ``parameters()``.

    Parameters
    ----------
    config : BlockConfig, optional
        Block hyperparameters.  Defaults to ``BlockConfig()``.
    mask_sampler : KeepMaskSampler, optional
        Source of drop-path keep masks.
    _initialize : bool
        Apply :func:`param_init`.  Only the checkpoint loader passes
        ``False``; it installs loaded tensors before the block is used.
        Otherwise the parameters hold uninitialized memory.
    """

    def __init__(
        self,
        config: Optional[BlockConfig] = None,
        mask_sampler: Optional[KeepMaskSampler] = None,
        *,
        _initialize: bool = True,
    ) -> None:
        super().__init__()
        self.config = config or BlockConfig()
        cfg = self.config

        # Registration order below fixes parameter enumeration order
        self.mlp = MLP(cfg.model_dim, cfg.mlp_dim, dropout=cfg.dropout)
        self.attn = MultiHeadSelfAttention(cfg.model_dim, cfg.head_dim, cfg.num_heads, dropout=cfg.dropout)
        self.norm1 = LayerNorm(cfg.model_dim, eps=cfg.norm_eps)
        self.norm2 = LayerNorm(cfg.model_dim, eps=cfg.norm_eps)
        self.drop_path = DropPath(cfg.layerdrop, sampler=mask_sampler)

        if _initialize:
            self.apply(lambda m: param_init(m, std=cfg.init_std))

    @classmethod
    def from_checkpoint(
        cls,
        prefix: str,
        config: Optional[BlockConfig] = None,
        mask_sampler: Optional[KeepMaskSampler] = None,
    ) -> "VisionTransformerBlock":
        """Build a frozen block from a raw binary parameter dump.

        See :func:`vit_block.checkpoint.load_block`.
        """
        from vit_block.checkpoint import load_block

        return load_block(prefix, config=config, mask_sampler=mask_sampler)

    def sublayers(self) -> "OrderedDict[str, nn.Module]":
        """Map ``w1 … norm2`` to the owning sublayers, in registration order."""
        modules = (
            self.mlp.fc1, self.mlp.fc2,
            self.attn.query, self.attn.key, self.attn.value, self.attn.proj,
            self.norm1, self.norm2,
        )
        return OrderedDict(zip(SUBLAYER_ORDER, modules))

    def freeze(self) -> "VisionTransformerBlock":
        """Stop gradient tracking for every parameter."""
        for param in self.parameters():
            param.requires_grad_(False)
        return self

    def forward(self, inputs: Sequence[torch.Tensor], training: bool = False) -> List[torch.Tensor]:
        """Forward pass with pre-norm residual connections.

        Parameters
        ----------
        inputs : sequence of torch.Tensor
            Exactly one tensor of shape ``(model_dim, T, B)``.
        training : bool
            Enables dropout and drop path.

        Returns
        -------
        list of torch.Tensor
            A single output of shape ``(model_dim, T, B)``.

        Raises
        ------
        InputArityError
            If ``inputs`` does not hold exactly one tensor.
        """
        if isinstance(inputs, torch.Tensor) or len(inputs) != 1:
            count = "a bare tensor" if isinstance(inputs, torch.Tensor) else f"{len(inputs)} inputs"
            raise InputArityError(f"VisionTransformerBlock expects exactly 1 input, got {count}")

        x = inputs[0]

        # Sub-layer 1: Self-Attention
        out = x + self.drop_path(self.attn(self.norm1(x), training=training), training=training)

        # Sub-layer 2: MLP
        out = out + self.drop_path(self.mlp(self.norm2(out), training=training), training=training)

        return [out]

    def pretty_string(self) -> str:
        cfg = self.config
        return (
            f"VisionTransformerBlock (num_heads: {cfg.num_heads}), "
            f"(dropout: {cfg.dropout}), (layerdrop: {cfg.layerdrop})"
        )

    def extra_repr(self) -> str:
        cfg = self.config
        return f"num_heads={cfg.num_heads}, dropout={cfg.dropout}, layerdrop={cfg.layerdrop}"


def model_summary(block: VisionTransformerBlock) -> str:
    """Generate a human-readable summary of block parameters.

    Parameters
    ----------
    block : VisionTransformerBlock
        The block to summarize.

    Returns
    -------
    str
        Formatted string with parameter counts per sublayer.
    """
    lines = ["=" * 60, block.pretty_string(), "=" * 60]

    total = 0
    frozen = 0
    for name, module in block.sublayers().items():
        params = sum(p.numel() for p in module.parameters())
        frozen += sum(p.numel() for p in module.parameters() if not p.requires_grad)
        total += params
        lines.append(f"  {name:25s} {params:>12,d}")

    lines.append("-" * 60)
    lines.append(f"  {'Total':25s} {total:>12,d}")
    lines.append(f"  {'Frozen':25s} {frozen:>12,d}")
    lines.append("=" * 60)

    return "\n".join(lines)
