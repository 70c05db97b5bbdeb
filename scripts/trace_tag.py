from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone

from anonrelay.core.logging_config import configure_logging
from anonrelay.persistence.db import SessionLocal
from anonrelay.persistence.repos.tags import find_tag_owner
from anonrelay.services.window import current_window


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Show which account held an anonymous tag")
    parser.add_argument("tag", type=int, help="Tag number, e.g. 42 for #0042")
    parser.add_argument(
        "--at",
        default=None,
        help="ISO-8601 instant inside the hour to inspect (default: now, UTC)",
    )
    return parser


def _parse_instant(raw: str | None) -> datetime:
    if raw is None:
        return datetime.now(timezone.utc)
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


async def _trace(tag: int, at: datetime) -> int:
    async with SessionLocal() as session:
        record = await find_tag_owner(session, tag, at)
    window = current_window(at).isoformat()
    if record is None:
        # Rows may already be pruned by per-owner retention.
        print(f"tag=#{tag:04d} window={window} owner=<not found>")
        return 1
    print(
        f"tag=#{tag:04d} window={window} owner={record.owner_id} "
        f"claimed_at={record.created_at.isoformat()}"
    )
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_trace(args.tag, _parse_instant(args.at)))
    except Exception as exc:  # noqa: BLE001 - surface lookup failures clearly
        print(f"trace_tag failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
