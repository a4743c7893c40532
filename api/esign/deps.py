import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

from fastapi import Depends

from .audit import DatabaseAuditLog
from .config import Settings, get_settings
from .dispatch import QueueFinalizer, QueueNotifier, QueueWebhookSender
from .locks import LockService
from .renderer import build_renderer
from .storage import build_storage


@dataclass
class Collaborators:
    renderer: Any
    storage: Any
    notifier: Any
    webhooks: Any
    audit: Any
    locks: LockService
    # channel name -> callable(contact, text); None means the real email/SMS senders
    otp_senders: Optional[Dict[str, Callable]] = None
    # None runs the PDF pipeline in-process right after the triggering commit
    finalizer: Any = None
    sleep: Callable[[float], None] = field(default=time.sleep)


def build_collaborators(settings: Settings) -> Collaborators:
    return Collaborators(
        renderer=build_renderer(settings),
        storage=build_storage(settings),
        notifier=QueueNotifier(),
        webhooks=QueueWebhookSender(),
        audit=DatabaseAuditLog(),
        locks=LockService.from_settings(settings),
        finalizer=None if settings.finalize_inline else QueueFinalizer(),
    )


@lru_cache(maxsize=4)
def _cached_collaborators(settings: Settings) -> Collaborators:
    return build_collaborators(settings)


def get_collaborators(settings: Settings = Depends(get_settings)) -> Collaborators:
    return _cached_collaborators(settings)
