"""
Pairing-code authentication.

When the transport reports that no valid credentials exist, the operator
links the bot as a companion device by typing a short pairing code into
WhatsApp on their phone. This module turns the configured phone number into
that code and prints the instructions on the console. Attempt counting and
retry scheduling belong to the state machine; this controller only runs one
request at a time and reports the outcome back as an event.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from ..errors import ConfigInvalid
from .state import Event, PairingCodeIssued, PairingFailed

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY_CODE = "27"
DEFAULT_NATIONAL_LENGTH = 9

PAIRING_INSTRUCTIONS = (
    "Open WhatsApp on your phone",
    "Go to Settings > Linked Devices",
    'Tap "Link a Device"',
    'Choose "Link with phone number instead"',
    "Enter this code: {code}",
    "Complete within 60 seconds",
)


def normalize_phone_number(
    raw: Optional[str],
    country_code: str = DEFAULT_COUNTRY_CODE,
    national_length: int = DEFAULT_NATIONAL_LENGTH,
) -> str:
    """
    Normalize a phone number to the international digits-only form the
    network expects for pairing.

    Examples (country code 27):
        "0683913716"      -> "27683913716"
        "683913716"       -> "27683913716"
        "+27 68 391 3716" -> "27683913716"
        "123"             -> ConfigInvalid

    Raises:
        ConfigInvalid: If the number is missing or does not have the
            expected prefix and length after correction
    """
    if not raw:
        raise ConfigInvalid("PHONE_NUMBER is not set; cannot request a pairing code")

    digits = re.sub(r"\D", "", raw)

    if digits.startswith("0"):
        digits = country_code + digits[1:]
    elif not digits.startswith(country_code):
        digits = country_code + digits

    expected = len(country_code) + national_length
    if len(digits) != expected:
        raise ConfigInvalid(
            f"Phone number {raw!r} normalizes to {digits!r}; expected "
            f"{expected} digits starting with {country_code}"
        )

    return digits


def format_pairing_block(code: str, phone_number: str, attempt: int, max_attempts: int) -> str:
    rule = "=" * 50
    lines = [
        "",
        rule,
        f"PAIRING CODE: {code}",
        f"For number: {phone_number}",
        f"Attempt: {attempt}/{max_attempts}",
        rule,
        "INSTRUCTIONS:",
    ]
    for number, step in enumerate(PAIRING_INSTRUCTIONS, start=1):
        lines.append(f"{number}. {step.format(code=code)}")
    lines.append(rule)
    lines.append("")
    return "\n".join(lines)


@dataclass
class PendingPairing:
    normalized_phone_number: str
    attempt_number: int
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PairingController:
    """
    Issues pairing-code requests against an open, unauthenticated handle.

    Only one request can be pending. The pending record lives until the
    connection controller has processed the outcome (``resolve()``) or the
    request is cancelled.
    """

    def __init__(
        self,
        phone_number: Optional[str],
        post_event: Callable[[Event], Awaitable[None]],
        max_attempts: int = 5,
        settle_delay: float = 3.0,
        country_code: str = DEFAULT_COUNTRY_CODE,
        national_length: int = DEFAULT_NATIONAL_LENGTH,
        console: Callable[[str], None] = print,
    ):
        self.phone_number = phone_number
        self.max_attempts = max_attempts
        self.settle_delay = settle_delay
        self.country_code = country_code
        self.national_length = national_length
        self.pending: Optional[PendingPairing] = None
        self._post_event = post_event
        self._console = console
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self.pending is not None or (self._task is not None and not self._task.done())

    def normalized_number(self) -> str:
        return normalize_phone_number(self.phone_number, self.country_code, self.national_length)

    def begin(self, handle, attempt: int) -> bool:
        """
        Start a pairing-code request for ``attempt``.

        Returns:
            False if a request is already pending

        Raises:
            ConfigInvalid: If the configured phone number is unusable
        """
        if self.busy:
            logger.debug("Pairing request already pending; not starting another")
            return False

        number = self.normalized_number()
        self.pending = PendingPairing(normalized_phone_number=number, attempt_number=attempt)
        logger.info(f"Requesting pairing code for: {number} (Attempt {attempt}/{self.max_attempts})")
        self._task = asyncio.create_task(self._request(handle, self.pending))
        return True

    async def _request(self, handle, pending: PendingPairing):
        try:
            # Give the fresh socket a moment before asking for a code
            await asyncio.sleep(self.settle_delay)
            code = await handle.request_pairing_code(pending.normalized_phone_number)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate pairing code: {e}")
            await self._post_event(PairingFailed(reason=str(e)))
            return

        self._console(format_pairing_block(
            code, pending.normalized_phone_number, pending.attempt_number, self.max_attempts
        ))
        logger.info(f"Pairing Code Generated: {code}")
        await self._post_event(PairingCodeIssued(code=code, attempt=pending.attempt_number))

    def resolve(self):
        """Forget the pending request once its outcome has been handled."""
        self.pending = None

    async def cancel(self):
        task, self._task = self._task, None
        self.pending = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
