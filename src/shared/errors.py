"""
Error taxonomy shared by the linker, the verifier and the HTTP layer.

Every error carries the HTTP status it maps to and a ``public_message``
that is safe to show to an end user.  Internal failures (storage,
upstream) keep the detailed message for the server-side log only.
"""

from __future__ import annotations


class GatekeeperError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    public_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    @property
    def exposes_detail(self) -> bool:
        """Whether ``message`` may be shown to the end user verbatim."""
        return self.status_code < 500


class InvalidInput(GatekeeperError):
    status_code = 400
    public_message = "Invalid or missing parameter"


class InvalidOrExpiredState(GatekeeperError):
    status_code = 400
    public_message = "Invalid or expired authorization request"


class AlreadyLinked(GatekeeperError):
    status_code = 400
    public_message = "Telegram account is already linked to a Discord account"


class Conflict(GatekeeperError):
    status_code = 400
    public_message = "Discord account is already linked to a Telegram account"


class PermissionDenied(GatekeeperError):
    status_code = 403
    public_message = "Forbidden"


class UpstreamError(GatekeeperError):
    """Discord (or another chat platform) failed or answered non-2xx."""

    status_code = 502
    public_message = "External service unavailable"


class MemberNotFound(UpstreamError):
    """The user is not (or no longer) a member of the guild."""

    public_message = "Discord member not found"


class StorageError(GatekeeperError):
    status_code = 500
    public_message = "Database error occurred"


class DispatcherClosed(GatekeeperError):
    """Raised by ``ActionDispatcher.enqueue`` once the consumer has stopped."""

    status_code = 500
    public_message = "Action queue is closed"
