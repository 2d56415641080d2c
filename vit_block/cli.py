"""
Block Inspection Script
=======================

Builds one encoder block, either randomly initialized from a config or
loaded from a raw binary checkpoint, runs a forward pass on random input
and logs a parameter summary.

Usage::

    # Random init, ViT-Base defaults
    python -m vit_block.cli

    # Random init from YAML with a CLI override
    python -m vit_block.cli --config configs/vit_base.yaml --num_heads 6

    # Load a checkpoint dump (files <prefix>.mlp.fc1.weight.bin, ...)
    python -m vit_block.cli --checkpoint weights/blocks.0 --seq-len 197
"""

from __future__ import annotations

import argparse
import functools
import logging
import sys
from typing import Optional, Sequence

import torch

from vit_block.checkpoint import CheckpointError, load_block
from vit_block.config import BlockConfig, add_config_arguments
from vit_block.model import VisionTransformerBlock, bernoulli_keep_mask, model_summary

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure console logging."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build a Vision Transformer block and run one forward pass",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m vit_block.cli --model_dim 384 --head_dim 64 --num_heads 6 --mlp_dim 1536
  python -m vit_block.cli --checkpoint weights/blocks.0 --seq-len 197
        """,
    )
    parser.add_argument("--checkpoint", type=str, default=None,
                        help="Path prefix of a raw binary block dump")
    parser.add_argument("--seq-len", type=int, default=197, help="Tokens per sample")
    parser.add_argument("--batch-size", type=int, default=2, help="Samples per batch")
    parser.add_argument("--train", action="store_true", help="Enable dropout and drop path")
    parser.add_argument("--seed", type=int, default=0, help="Seed for input and masks")
    parser.add_argument("--device", type=str, default=None, help="Device (auto-detects if not specified)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    add_config_arguments(parser)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    config = BlockConfig.from_namespace(args)

    if args.device:
        device = torch.device(args.device)
    else:
        device = torch.device("cuda" if torch.cuda.is_available() else "cpu")

    torch.manual_seed(args.seed)
    generator = torch.Generator(device=device).manual_seed(args.seed)
    sampler = functools.partial(bernoulli_keep_mask, generator=generator)

    if args.checkpoint:
        try:
            block = load_block(args.checkpoint, config=config, mask_sampler=sampler)
        except CheckpointError as e:
            logger.error("Failed to load checkpoint: %s", e)
            return 1
    else:
        block = VisionTransformerBlock(config, mask_sampler=sampler)
    block.to(device)

    logger.info("\n%s", model_summary(block))

    x = torch.randn(config.model_dim, args.seq_len, args.batch_size, device=device)
    with torch.no_grad():
        (out,) = block([x], training=args.train)

    logger.info(
        "Forward (%s): input %s -> output %s | mean %.4f std %.4f",
        "train" if args.train else "eval",
        tuple(x.shape), tuple(out.shape), out.mean().item(), out.std().item(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
