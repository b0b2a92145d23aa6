from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta

from newsletter_api.persistence.db import SessionLocal
from newsletter_api.services.idempotency import prune_idempotency_records


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete saved idempotent responses past retention")
    parser.add_argument(
        "--older-than-hours",
        type=int,
        default=None,
        help="Retention window; defaults to IDEMPOTENCY_RETENTION_HOURS",
    )
    return parser


async def prune(older_than_hours: int | None = None) -> None:
    # Remove finalized idempotency snapshots to keep storage bounded.
    older_than = timedelta(hours=older_than_hours) if older_than_hours is not None else None
    async with SessionLocal() as session:
        deleted = await prune_idempotency_records(session, older_than=older_than)
    print(f"pruned_idempotency_records={deleted}")


if __name__ == "__main__":
    args = _build_parser().parse_args()
    asyncio.run(prune(args.older_than_hours))
