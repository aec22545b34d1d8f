"""Embed every memstore record still missing a vector.

Safe to re-run: records that fail stay queued for the next pass.

Usage:
    uv run python scripts/backfill_embeddings.py \
      --redis-url redis://localhost:6379 \
      --batch-size 100
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

from memstore.config import EmbeddingConfig
from memstore.service import MemoryService


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--redis-url",
        default=os.environ.get("MEMSTORE_REDIS_URL", "redis://localhost:6379"),
    )
    parser.add_argument(
        "--embedding-provider",
        default=os.environ.get("MEMSTORE_EMBEDDING_PROVIDER", "openai"),
        help="openai or hashing",
    )
    parser.add_argument("--model", default="text-embedding-3-small")
    parser.add_argument("--batch-size", type=int, default=100)
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args()


async def _main() -> int:
    args = _parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    service = await MemoryService.connect(
        args.redis_url,
        embedding_config=EmbeddingConfig(
            provider=args.embedding_provider,
            model=args.model,
            api_key=os.environ.get("OPENAI_API_KEY"),
            batch_size=args.batch_size,
        ),
    )
    try:
        result = await service.backfill_embeddings(args.batch_size)
        remaining = await service.store.pending_embedding_count()
    finally:
        await service.close()

    report = {
        "processed": result.processed,
        "failed": result.failed,
        "remaining": remaining,
    }
    print(json.dumps(report, indent=2, sort_keys=True))
    return 0 if result.failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
