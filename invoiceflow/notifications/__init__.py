from invoiceflow.notifications.gateway import (
    BROADCAST,
    NotificationGateway,
    Subscriber,
    batch_snapshot,
    document_snapshot,
)

__all__ = [
    "BROADCAST", "NotificationGateway", "Subscriber",
    "batch_snapshot", "document_snapshot",
]
