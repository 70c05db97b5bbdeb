from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

from anonrelay.core.config import get_settings
from anonrelay.core.errors import MessageRejectedError


ROLE_MENTION_RE = re.compile(r"<@&(\d+)>")
ANY_MENTION_RE = re.compile(r"<@[&!]?(\d+)>")


@dataclass(frozen=True)
class AuthorContext:
    # Permissions of the real author in the target channel.
    can_mention_everyone: bool = False
    # Mentionable roles in the guild, id -> display name.
    mentionable_roles: dict[str, str] = field(default_factory=dict)


class Sanitizer(Protocol):
    def sanitize(self, raw_message: str, author: AuthorContext) -> str:
        ...


class MentionSanitizer:
    def __init__(self, *, max_mentions: int | None = None, max_length: int | None = None) -> None:
        settings = get_settings()
        self._max_mentions = settings.anon_max_mentions if max_mentions is None else max_mentions
        self._max_length = settings.anon_max_message_length if max_length is None else max_length

    def sanitize(self, raw_message: str, author: AuthorContext) -> str:
        message = raw_message
        if not author.can_mention_everyone:
            message = _rewrite_role_mentions(message, author.mentionable_roles)

        mention_count = len(ANY_MENTION_RE.findall(message))
        if mention_count > self._max_mentions:
            raise MessageRejectedError(
                f"Too many mentions! You may send at most {self._max_mentions} role or user "
                "mentions in an anonymous message"
            )
        if len(message) > self._max_length:
            raise MessageRejectedError(
                "Message is too long! This could be caused by some mentions. "
                f"({len(message)}/{self._max_length} characters)"
            )
        return message


def _rewrite_role_mentions(message: str, mentionable_roles: dict[str, str]) -> str:
    # Mentionable roles become plain @Name text so the webhook cannot ping them on the author's behalf.
    def _replace(match: re.Match[str]) -> str:
        name = mentionable_roles.get(match.group(1))
        if name is None:
            return match.group(0)
        return f"@{name}"

    return ROLE_MENTION_RE.sub(_replace, message)
