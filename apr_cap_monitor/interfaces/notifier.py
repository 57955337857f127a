"""Notifier protocol: channels that receive cycle reports and rate alerts."""
from typing import Protocol


class Notifier(Protocol):
    """Sends alerts (loud) and log messages (optionally silent)."""

    async def send_alert(self, message: str, subject: str = "") -> bool: ...

    async def send_log(self, message: str, silent: bool = True) -> bool: ...
