"""Operator alerts for provider-side incidents.

The notifier owns the alert cooldown: callers may invoke it on every
occurrence and at most one alert per condition key goes out per window.
Notification is best-effort and never raises to the caller.
"""

from typing import Any, Protocol, Sequence

import httpx
import structlog

from genqueue.services.notifications.cooldown import CooldownStore, InMemoryCooldownStore

logger = structlog.get_logger(__name__)

BALANCE_EXHAUSTED_KEY = "provider_balance_exhausted"


class AlertSink(Protocol):
    async def send(self, subject: str, message: str) -> None: ...


class LoggingAlertSink:
    """Writes alerts to the structured log only."""

    async def send(self, subject: str, message: str) -> None:
        logger.error("admin_alert.logged", subject=subject, message=message)


class WebhookAlertSink:
    """Posts alerts as JSON to a chat/incident webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, subject: str, message: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                self.url, json={"subject": subject, "text": f"{subject}\n\n{message}"}
            )
            response.raise_for_status()


class AdminNotifier:
    """Rate-limited operator alerts."""

    def __init__(
        self,
        sinks: Sequence[AlertSink],
        cooldown_store: CooldownStore | None = None,
        cooldown_seconds: float = 3600,
    ):
        """Initialize notifier.

        Args:
            sinks: Destinations every alert is delivered to
            cooldown_store: Per-key expiry store (defaults to in-memory)
            cooldown_seconds: Minimum time between two alerts for the same key
        """
        self.sinks = list(sinks)
        self.cooldown_store = cooldown_store or InMemoryCooldownStore()
        self.cooldown_seconds = cooldown_seconds

    async def notify(self, key: str, subject: str, message: str) -> bool:
        """Send an alert unless ``key`` alerted within the cooldown window.

        Returns:
            True if the alert was delivered, False if suppressed or delivery failed
        """
        if not await self.cooldown_store.try_acquire(key, self.cooldown_seconds):
            logger.debug("admin_alert.suppressed", key=key)
            return False

        try:
            for sink in self.sinks:
                await sink.send(subject, message)
        except Exception as e:
            # Let the next occurrence retry instead of silencing the whole window
            await self.cooldown_store.release(key)
            logger.warning(
                "admin_alert.failed", key=key, error=str(e), error_type=type(e).__name__
            )
            return False

        logger.info("admin_alert.sent", key=key, sinks=len(self.sinks))
        return True

    async def notify_balance_exhausted(self, details: dict[str, Any]) -> bool:
        """Alert operators that the platform's prepaid provider balance is depleted."""
        lines = [f"{name}: {value}" for name, value in details.items() if value is not None]
        message = (
            "The image generation provider rejected a submission because the account "
            "balance is exhausted. Top up the provider account; users are receiving "
            "errors and refunds until then.\n\n" + "\n".join(lines)
        )
        return await self.notify(
            BALANCE_EXHAUSTED_KEY, "Provider balance exhausted", message
        )
