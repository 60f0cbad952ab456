from __future__ import annotations

import logging
from dataclasses import dataclass

NOTIFICATION_LOGGER = logging.getLogger("rental_hub.notifications")

STATUS_MESSAGES = {
    "requested": "New rental request for {name}",
    "approved": "Your rental of {name} was approved",
    "rejected": "Your rental of {name} was rejected",
    "cancelled": "Rental of {name} was cancelled by the renter",
    "shipped": "{name} has been shipped",
    "active": "Renter confirmed receipt of {name}",
    "returning": "{name} is on its way back",
    "completed": "Rental of {name} is completed",
}


@dataclass(frozen=True)
class RentalEvent:
    rental_id: str
    status: str
    recipient_id: str
    audience: str
    message: str


def build_event(rental: dict, status: str, audience: str) -> RentalEvent:
    recipient = rental.get("renterId") if audience == "renter" else rental.get("ownerId")
    template = STATUS_MESSAGES.get(status, "Rental of {name} is now " + status)
    return RentalEvent(
        rental_id=str(rental.get("id")),
        status=status,
        recipient_id=str(recipient),
        audience=audience,
        message=template.format(name=rental.get("name") or "equipment"),
    )


class Notifier:
    async def notify(self, event: RentalEvent) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    async def notify(self, event: RentalEvent) -> None:
        NOTIFICATION_LOGGER.info(
            "notify audience=%s recipient=%s rental=%s status=%s message=%s",
            event.audience,
            event.recipient_id,
            event.rental_id,
            event.status,
            event.message,
        )


async def send_quietly(notifier: Notifier | None, event: RentalEvent) -> None:
    if notifier is None:
        return
    try:
        await notifier.notify(event)
    except Exception:
        NOTIFICATION_LOGGER.exception("Notification failed rental=%s status=%s", event.rental_id, event.status)
