"""Run one memstore maintenance cycle, for cron or any external scheduler.

Usage:
    uv run python scripts/run_maintenance.py \
      --redis-url redis://localhost:6379 \
      --embedding-provider openai
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os

from memstore.config import EmbeddingConfig
from memstore.config import MaintenanceConfig
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
    parser.add_argument("--decay-factor", type=float, default=0.98)
    parser.add_argument("--archive-threshold", type=float, default=0.1)
    parser.add_argument(
        "--skip-backfill",
        action="store_true",
        help="Do not re-embed records missing a vector before the cycle.",
    )
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args()


async def _main() -> int:
    args = _parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    service = await MemoryService.connect(
        args.redis_url,
        embedding_config=EmbeddingConfig(
            provider=args.embedding_provider,
            api_key=os.environ.get("OPENAI_API_KEY"),
        ),
        maintenance_config=MaintenanceConfig(
            decay_factor=args.decay_factor,
            archive_threshold=args.archive_threshold,
            backfill_on_cycle=not args.skip_backfill,
        ),
    )
    try:
        summary = await service.run_cycle()
    finally:
        await service.close()

    print(summary.model_dump_json(indent=2))
    return 0 if summary.ok else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
