"""
otp/delivery.py -- Transport boundary for one-time codes.

The session manager only knows the CodeDelivery protocol. Real SMS or email
gateways live outside this repository; LogCodeDelivery is the demo transport
that writes the code to the server log instead.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("storefront.otp")


class CodeDelivery(Protocol):
    def deliver(self, contact: str, code: str) -> None: ...


class LogCodeDelivery:
    """Demo transport. Logs the full code in debug mode, a masked one otherwise."""

    def __init__(self, reveal_codes: bool = False) -> None:
        self.reveal_codes = reveal_codes

    def deliver(self, contact: str, code: str) -> None:
        shown = code if self.reveal_codes else "*" * len(code)
        logger.info("One-time code for %s: %s (demo delivery)", contact, shown)
