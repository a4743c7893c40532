"""Queue-backed collaborators: the API enqueues, the Celery worker delivers."""


class QueueNotifier:
    def notify(self, recipient: dict, event: str, context: dict):
        from .tasks import deliver_notification
        deliver_notification.delay(recipient, event, context)


class QueueWebhookSender:
    def enqueue(self, document_id: int):
        from .tasks import deliver_webhook
        deliver_webhook.delay(document_id)


class QueueFinalizer:
    def schedule(self, document_id: int):
        from .tasks import finalize_document
        finalize_document.delay(document_id)
