from webhook_service.services.delivery import DeliveryEngine
from webhook_service.services.dispatcher import EventDispatcher
from webhook_service.services.notifications import WebhookNotifier
from webhook_service.services.signing import SignatureSigner, generate_webhook_secret
from webhook_service.services.webhooks import WebhookService

__all__ = [
    "DeliveryEngine",
    "EventDispatcher",
    "SignatureSigner",
    "WebhookNotifier",
    "WebhookService",
    "generate_webhook_secret",
]
