import asyncio
from typing import Optional
import logging

import httpx

from .config import settings

logger = logging.getLogger(__name__)


class Notifier:
    """Durable notifications (email/SMS) handed to an external delivery webhook.

    Sends are fire-and-forget: failures are logged and never propagate into
    the ride transition that triggered them.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0, transport=None):
        self.webhook_url = settings.NOTIFY_WEBHOOK_URL if webhook_url is None else webhook_url
        self.timeout = timeout
        self.transport = transport
        self._tasks: set = set()

    async def deliver(self, to: str, template: str, context: dict) -> bool:
        if not to:
            logger.info("notification_skipped: template=%s reason=no_recipient", template)
            return False
        if not self.webhook_url:
            logger.info("notification_skipped: template=%s to=%s reason=no_webhook", template, to)
            return False
        payload = {"to": to, "template": template, "context": context}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.webhook_url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("notification_failed: template=%s to=%s error=%s", template, to, e)
            return False
        logger.info("notification_sent: template=%s to=%s", template, to)
        return True

    def send(self, to: str, template: str, context: dict) -> asyncio.Task:
        """Schedule delivery without waiting for it."""
        task = asyncio.create_task(self.deliver(to, template, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def ride_accepted(self, rider: Optional[dict], ride: dict, driver: dict):
        if not rider:
            return None
        return self.send(rider.get("email"), "ride_accepted", {
            "ride_id": ride["id"],
            "vehicle_class": ride["vehicle_class"],
            "pickup": (ride.get("pickup") or {}).get("address"),
            "destination": (ride.get("destination") or {}).get("address"),
            "fare": ride["final_amount"],
            "driver_name": driver.get("name"),
            "driver_phone": driver.get("phone"),
        })

    def ride_cancelled(self, recipient: Optional[dict], ride: dict):
        if not recipient:
            return None
        return self.send(recipient.get("email"), "ride_cancelled", {
            "ride_id": ride["id"],
            "cancelled_by": ride.get("cancelled_by"),
            "reason": ride.get("cancel_reason"),
            "fee": ride.get("cancellation_fee"),
        })

    def otp(self, email: str, code: str, template: str = "signup_otp"):
        return self.send(email, template, {"otp": code})
