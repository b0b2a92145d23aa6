from __future__ import annotations

import asyncio

from newsletter_api.core.logging import configure_logging
from newsletter_api.workers.issue_delivery_worker import run_issue_delivery_loop


async def _main() -> None:
    # Run delivery outside the API process so publish requests return as soon as the outbox is written.
    configure_logging()
    await run_issue_delivery_loop()


if __name__ == "__main__":
    asyncio.run(_main())
