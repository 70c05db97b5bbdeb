from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from anonrelay.core.errors import InternalError, TransientError, UserFacingError
from anonrelay.services.identity import AnonIdentityService, format_tag
from anonrelay.services.sanitizer import AuthorContext


logger = logging.getLogger(__name__)

TRY_AGAIN_MESSAGE = "Something went wrong, please try again later."
INTERNAL_ERROR_MESSAGE = "Oh no! Error encountered :("


@dataclass(frozen=True)
class CommandReply:
    # Ephemeral text shown to the invoking user.
    content: str
    ok: bool


class AnonCommands:
    """Boundary between the slash-command layer and the identity service.

    Every outcome becomes a `CommandReply`; raw internal errors never reach the user.
    """

    def __init__(self, service: AnonIdentityService) -> None:
        self._service = service

    async def anon(
        self,
        *,
        owner_id: str,
        channel_id: str,
        message: str,
        author: AuthorContext | None = None,
    ) -> CommandReply:
        async def _send() -> str:
            await self._service.send_anonymously(owner_id, channel_id, message, author)
            return "Sent!"

        return await self._run("anon", owner_id, _send)

    async def anon_retag(self, *, owner_id: str) -> CommandReply:
        async def _retag() -> str:
            result = await self._service.rotate_tag(owner_id)
            return f"Done: {format_tag(result.old_tag)} -> {format_tag(result.new_tag)}"

        return await self._run("anon-retag", owner_id, _retag)

    async def _run(
        self,
        command: str,
        owner_id: str,
        handler: Callable[[], Awaitable[str]],
    ) -> CommandReply:
        try:
            return CommandReply(content=await handler(), ok=True)
        except UserFacingError as exc:
            return CommandReply(content=exc.message, ok=False)
        except (TransientError, SQLAlchemyError):
            logger.warning("command_transient_failure command=%s owner=%s", command, owner_id, exc_info=True)
            return CommandReply(content=TRY_AGAIN_MESSAGE, ok=False)
        except InternalError:
            logger.exception("command_internal_error command=%s owner=%s", command, owner_id)
            return CommandReply(content=INTERNAL_ERROR_MESSAGE, ok=False)
        except Exception:  # noqa: BLE001 - raw errors never reach the user
            logger.exception("command_failed command=%s owner=%s", command, owner_id)
            return CommandReply(content=INTERNAL_ERROR_MESSAGE, ok=False)
