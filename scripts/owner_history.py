from __future__ import annotations

import argparse
import asyncio
import sys

from anonrelay.persistence.db import SessionLocal
from anonrelay.persistence.repos.tags import list_owner_tags


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List retained anonymous tags for an account")
    parser.add_argument("owner_id", help="Discord user id")
    parser.add_argument("--limit", type=int, default=20)
    return parser


async def _history(owner_id: str, limit: int) -> int:
    async with SessionLocal() as session:
        records = await list_owner_tags(session, owner_id, limit)
    if not records:
        print(f"No retained tags for {owner_id}")
        return 0
    for record in records:
        print(
            f"#{record.tag:04d} window={record.window_start.isoformat()} "
            f"claimed_at={record.created_at.isoformat()}"
        )
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_history(args.owner_id, args.limit))
    except Exception as exc:  # noqa: BLE001 - surface lookup failures clearly
        print(f"owner_history failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
