from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Protocol

from gatekeep.logging import get_logger, mask_email

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutgoingMessage:
    kind: str
    to: str
    code: str


class Mailer(Protocol):
    """Delivery of one-time codes to a user's mailbox."""

    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, code: str) -> bool: ...


class LogMailer:
    """Mailer that writes outgoing messages to the log instead of sending them.

    Codes are only written out when ``reveal_codes`` is set, which is meant for
    local development. With ``keep_outbox`` the most recent messages are also
    held in memory so a test can read the code a user would have received.
    """

    def __init__(
        self,
        *,
        reveal_codes: bool = False,
        keep_outbox: bool = False,
        outbox_size: int = 100,
    ) -> None:
        self.reveal_codes = reveal_codes
        self.outbox: Optional[Deque[OutgoingMessage]] = (
            deque(maxlen=outbox_size) if keep_outbox else None
        )

    def _deliver(self, kind: str, to_email: str, code: str, subject: str) -> bool:
        if self.outbox is not None:
            self.outbox.append(OutgoingMessage(kind=kind, to=to_email, code=code))
        fields = {"to": mask_email(to_email), "subject": subject, "kind": kind}
        if self.reveal_codes:
            fields["code"] = code
        logger.info("email_dev_mode", **fields)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        return self._deliver(
            "email_verification", to_email, token, "Verify your email address"
        )

    def send_password_reset(self, to_email: str, code: str) -> bool:
        return self._deliver("password_reset", to_email, code, "Your password reset code")

    def last_code(self, kind: str, to_email: str) -> Optional[str]:
        """Most recent code of ``kind`` sent to ``to_email``, if the outbox is kept."""
        if self.outbox is None:
            return None
        for message in reversed(self.outbox):
            if message.kind == kind and message.to == to_email:
                return message.code
        return None
