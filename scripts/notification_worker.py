from __future__ import annotations

import asyncio

from grantflow.core.logging import configure_logging
from grantflow.workers.notification_worker import run_notification_loop


async def _main() -> None:
    # Run fan-out and delivery on the poll interval without needing Redis.
    configure_logging()
    await run_notification_loop()


if __name__ == "__main__":
    asyncio.run(_main())
