from .outbox import DEFAULT_PULL_LIMIT, DeliveryStatus, OutboxEntry, OutboxLedger

__all__ = ["DEFAULT_PULL_LIMIT", "DeliveryStatus", "OutboxEntry", "OutboxLedger"]
