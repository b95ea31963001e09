from webhook_service.repositories.webhooks import (
    DeliveryAttemptRepository,
    WebhookSubscriptionRepository,
)

__all__ = ["DeliveryAttemptRepository", "WebhookSubscriptionRepository"]
