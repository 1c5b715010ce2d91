from .notifier import WebhookNotifier, validate_webhook_url

__all__ = ["WebhookNotifier", "validate_webhook_url"]
