"""Celery tasks consumed by the worker container.

The API only enqueues (see ``dispatch``); every task here opens its own
session and builds its own collaborators.
"""
import logging

from celery import Celery

from . import db, notifications, webhooks, workflow
from .config import REDIS_URL, WORKER_QUEUE, get_settings
from .logging_setup import configure_logging

logger = logging.getLogger(__name__)

cel = Celery("signing", broker=REDIS_URL, backend=REDIS_URL)
cel.conf.task_default_queue = WORKER_QUEUE
cel.conf.beat_schedule = {
    "sweep-expired-documents": {"task": "sweep_expired_documents", "schedule": 3600.0},
    "send-expiry-reminders": {"task": "send_expiry_reminders", "schedule": 900.0},
    "resume-stalled-finalizations": {"task": "resume_stalled_finalizations", "schedule": 60.0},
}


def _collaborators(settings):
    from .deps import build_collaborators
    return build_collaborators(settings)


@cel.on_after_configure.connect
def _setup_logging(sender, **kwargs):
    configure_logging()


@cel.task(name="deliver_notification", queue=WORKER_QUEUE, autoretry_for=(Exception,),
          retry_backoff=2, retry_backoff_max=60, max_retries=3)
def deliver_notification(recipient: dict, event: str, context: dict):
    notifications.deliver_notification(recipient, event, context)


@cel.task(name="deliver_webhook", queue=WORKER_QUEUE)
def deliver_webhook(document_id: int):
    settings = get_settings()
    storage = _collaborators(settings).storage
    with db.new_session() as session:
        delivered = webhooks.send_completion_webhook(session, document_id, storage, settings)
    return {"document_id": document_id, "delivered": delivered}


@cel.task(name="finalize_document", queue=WORKER_QUEUE)
def finalize_document(document_id: int):
    from .pipeline import finalize_document as run_pipeline
    settings = get_settings()
    collab = _collaborators(settings)
    # the worker renders in-process; never bounce the job back onto the queue
    collab.finalizer = None
    return {"document_id": document_id, "outcome": run_pipeline(document_id, collab, settings)}


@cel.task(name="sweep_expired_documents", queue=WORKER_QUEUE)
def sweep_expired_documents():
    settings = get_settings()
    collab = _collaborators(settings)
    with db.new_session() as session:
        counts, outbox = workflow.sweep_expired(session, settings)
    outbox.flush(collab, settings)
    return counts


@cel.task(name="send_expiry_reminders", queue=WORKER_QUEUE)
def send_expiry_reminders():
    settings = get_settings()
    collab = _collaborators(settings)
    with db.new_session() as session:
        counts, outbox = workflow.send_reminders(session, settings)
    outbox.flush(collab, settings)
    return counts


@cel.task(name="resume_stalled_finalizations", queue=WORKER_QUEUE)
def resume_stalled_finalizations():
    from .dispatch import QueueFinalizer
    from .pipeline import resume_stalled
    settings = get_settings()
    collab = _collaborators(settings)
    # one finalize task per document so a slow render does not hold up the rest
    collab.finalizer = QueueFinalizer()
    return {"rescheduled": resume_stalled(collab, settings)}
