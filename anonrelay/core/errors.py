from __future__ import annotations

from datetime import datetime


def _wait_hint(resets_at: datetime | None) -> str:
    if resets_at is None:
        return "Please wait until the next hour."
    return f"Please wait until the next hour ({resets_at:%H:%M} UTC)."


class AnonRelayError(Exception):
    """Base error for anonrelay."""


class UserFacingError(AnonRelayError):
    """Condition the end user caused or can act on; the message is shown verbatim."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TagsExhaustedError(UserFacingError):
    def __init__(self, resets_at: datetime | None = None) -> None:
        super().__init__(f"No more anonymous tags available! {_wait_hint(resets_at)}")
        self.resets_at = resets_at


class RetagLimitError(UserFacingError):
    def __init__(self, max_retags: int, resets_at: datetime | None = None) -> None:
        super().__init__(
            f"You have already retagged the maximum of {max_retags} times this hour! "
            f"{_wait_hint(resets_at)}"
        )
        self.max_retags = max_retags
        self.resets_at = resets_at


class NothingToRotateError(UserFacingError):
    def __init__(self) -> None:
        super().__init__(
            "You don't have a tag to reset! Send an anonymous message with /anon first."
        )


class MessageRejectedError(UserFacingError):
    """Sanitizer violation such as too many mentions or an oversized message."""


class OwnerMutedError(UserFacingError):
    """Owner is muted from sending anonymous messages."""


class DeliveryFailedError(UserFacingError):
    def __init__(self) -> None:
        super().__init__(
            "Could not send webhook. Please try again later or contact a moderator."
        )


class TransientError(AnonRelayError):
    """Platform or store call failed in a way that may succeed on retry."""


class PlatformError(TransientError):
    """Webhook platform request failure."""


class EndpointUnavailableError(TransientError):
    """Endpoint lookup-or-create failed, timed out or was cancelled."""


class AllocationConflictError(TransientError):
    """Tag allocation kept losing races on the (window, tag) constraint."""


class IntegrationUnavailableError(TransientError):
    """Circuit breaker is open for an external integration."""


class InternalError(AnonRelayError):
    """Invariant violation or misconfiguration; never shown to users verbatim."""


class TagInvariantError(InternalError):
    """Allocator chose a tag already present in the loaded window set."""


class PlatformAuthError(InternalError):
    """Webhook platform rejected the bot credentials."""


class ProviderConfigError(InternalError):
    """Missing or invalid provider configuration."""
