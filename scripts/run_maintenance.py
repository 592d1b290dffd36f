from __future__ import annotations

import argparse
import asyncio
from typing import get_args

from grantflow.core.logging import configure_logging
from grantflow.persistence.db import SessionLocal
from grantflow.services.maintenance import MaintenanceTask, run_task


async def _run(tasks: list[MaintenanceTask]) -> None:
    # One session and commit per task.
    for task in tasks:
        async with SessionLocal() as session:
            deleted = await run_task(session, task)
            await session.commit()
        print(f"{task} deleted={deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune expired idempotency, audit and notification rows")
    parser.add_argument("--task", dest="tasks", action="append", choices=get_args(MaintenanceTask))
    args = parser.parse_args()

    configure_logging()
    asyncio.run(_run(args.tasks or list(get_args(MaintenanceTask))))


if __name__ == "__main__":
    main()
