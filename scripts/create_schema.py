from __future__ import annotations

import asyncio

from anonrelay.persistence.db import create_schema, engine


async def _create() -> None:
    # Bootstrap tables for local sqlite/dev databases without running alembic.
    await create_schema()
    await engine.dispose()
    print("schema_created")


if __name__ == "__main__":
    asyncio.run(_create())
