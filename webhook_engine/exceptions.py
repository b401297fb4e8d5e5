"""Domain exceptions raised by the webhook engine.

Routers translate these to HTTP errors; nothing inside the delivery pipeline
lets them reach an event publisher.
"""

import uuid


class WebhookError(Exception):
    """Base class for webhook engine errors."""


class WebhookNotFoundError(WebhookError):
    def __init__(self, webhook_id: uuid.UUID) -> None:
        super().__init__(f"Webhook {webhook_id} not found")
        self.webhook_id = webhook_id


class DeliveryNotFoundError(WebhookError):
    def __init__(self, delivery_id: uuid.UUID) -> None:
        super().__init__(f"Delivery {delivery_id} not found")
        self.delivery_id = delivery_id


class DuplicateDeliveryError(WebhookError):
    """A delivery already exists for this (webhook_id, event_id)."""

    def __init__(self, webhook_id: uuid.UUID, event_id: uuid.UUID) -> None:
        super().__init__(f"Delivery for webhook {webhook_id} and event {event_id} already exists")
        self.webhook_id = webhook_id
        self.event_id = event_id


class EventValidationError(WebhookError):
    """Raised when a published event is malformed or of an unknown type."""
