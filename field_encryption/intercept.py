"""
Outbound email intercept.

Ad-hoc mail (not from the delivery queue) passes through the platform's email
hook before it is sent. If any of to/cc/bcc is a placeholder, the intercept
sends the message itself with decrypted addresses and tells the caller to drop
the original. On any failure it fails open: the caller sends the unmodified
message, which at worst bounces off the placeholder domain.

Every message is handled on its own; no state is kept between messages.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from .codec import FieldCodec
from .logging_config import describe_error
from .mailer import Mailer
from .models import OutboundEmail

logger = logging.getLogger(__name__)

RECIPIENT_FIELDS = ("to", "cc", "bcc")


class OutboundIntercept:
    """Decrypt placeholder recipients of outbound mail and re-send."""

    def __init__(self, codec: FieldCodec, mailer: Mailer) -> None:
        self._codec = codec
        self._mailer = mailer

    async def on_outbound_email(self, message: OutboundEmail) -> bool:
        """
        Handle one outbound message.

        Returns:
            True if the message was re-sent with decrypted recipients and the
            original send must be suppressed; False to let the caller proceed
        """
        try:
            decrypted = {}
            for name in RECIPIENT_FIELDS:
                value = getattr(message, name)
                if self._codec.is_encrypted(value):
                    decrypted[name] = self._codec.decrypt(value)

            if not decrypted:
                return False

            await self._mailer.send(replace(message, **decrypted))
        except Exception as e:
            logger.error("Outbound email decryption failed: %s", describe_error(e))
            return False

        logger.info(
            "Sent email with decrypted %s (subject %r)",
            "/".join(decrypted),
            message.subject[:50],
        )
        return True
