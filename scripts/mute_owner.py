from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone

from anonrelay.core.logging_config import configure_logging
from anonrelay.persistence.db import transaction_scope
from anonrelay.persistence.repos.mutes import mute_owner


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mute an account from sending anonymous messages")
    parser.add_argument("owner_id", help="Discord user id to mute")
    parser.add_argument("--hours", type=float, default=None, help="Mute duration (default: indefinite)")
    parser.add_argument("--reason", default=None, help="Reason shown to the muted user")
    return parser


async def _mute(owner_id: str, hours: float | None, reason: str | None) -> int:
    end_date = None
    if hours is not None:
        end_date = datetime.now(timezone.utc) + timedelta(hours=hours)
    async with transaction_scope() as session:
        await mute_owner(session, owner_id, end_date=end_date, reason=reason)
    until = end_date.isoformat() if end_date else "indefinitely"
    print(f"Muted {owner_id} until {until}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_mute(args.owner_id, args.hours, args.reason))
    except Exception as exc:  # noqa: BLE001 - surface moderation failures clearly
        print(f"mute_owner failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
