from __future__ import annotations

import argparse
import asyncio
import sys

from anonrelay.persistence.db import transaction_scope
from anonrelay.persistence.repos.mutes import unmute_owner


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Lift an anonymous-message mute")
    parser.add_argument("owner_id", help="Discord user id to unmute")
    return parser


async def _unmute(owner_id: str) -> int:
    async with transaction_scope() as session:
        removed = await unmute_owner(session, owner_id)
    if not removed:
        print(f"{owner_id} was not muted")
        return 1
    print(f"Unmuted {owner_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_unmute(args.owner_id))
    except Exception as exc:  # noqa: BLE001 - surface moderation failures clearly
        print(f"unmute_owner failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
