import threading
import time
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..db.database import SessionLocal
from .priority_queue import EmailPriorityQueue, PrioritizedEmail
from .email_service import get_email
from .decision_engine import DecisionEngine, get_engine
from .taxonomy import ClassificationResult, Priority

log = logging.getLogger(__name__)

_queue = EmailPriorityQueue()
_running = False
_thread: threading.Thread | None = None

SLEEP_INTERVAL = 2  # seconds idle wait
MAX_ATTEMPTS_PER_EMAIL = 3


def enqueue_email(email_id: int, priority, tenant_id: str = 'default'):
    _queue.push(email_id, priority, tenant_id)


def pending() -> int:
    return len(_queue)


def process_next(engine: Optional[DecisionEngine] = None, session_factory: Callable[[], Session] = SessionLocal) -> Optional[PrioritizedEmail]:
    """Route the most urgent queued email. Returns the item handled, or None when idle."""
    item = _queue.pop()
    if item is None:
        return None
    engine = engine or get_engine()
    db = session_factory()
    try:
        email = get_email(db, item.email_id, item.tenant_id)
        if not email or email.status != 'processing':
            return item
        try:
            engine.process(db, email)
        except Exception as e:
            db.rollback()
            attempts = item.attempts + 1
            log.warning("queue_worker_process_failed", exc_info=e, extra={"email_id": item.email_id, "attempts": attempts})
            if attempts >= MAX_ATTEMPTS_PER_EMAIL:
                db.refresh(email)
                if email.status == 'processing':
                    engine.escalate(db, email, ClassificationResult.fallback(), f"Processing failed after {attempts} attempts: {e}", Priority.HIGH)
            else:
                _queue.push(item.email_id, email.priority or Priority.MEDIUM, item.tenant_id, attempts)
        return item
    finally:
        db.close()


def _worker_loop():
    while _running:
        if process_next() is None:
            time.sleep(SLEEP_INTERVAL)


def start_queue_worker():
    global _running, _thread
    if _running:
        return
    _running = True
    _thread = threading.Thread(target=_worker_loop, name="engine-worker", daemon=True)
    _thread.start()
    log.info("queue_worker_started")


def stop_queue_worker():
    global _running
    _running = False
