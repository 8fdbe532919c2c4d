from backend.app.services import queue_worker
from backend.app.services.priority_queue import EmailPriorityQueue
from backend.app.models.email_model import Email
from backend.tests.helpers import email_payload


def test_priority_queue_orders_urgent_first_then_fifo():
    q = EmailPriorityQueue()
    q.push(1, 'low')
    q.push(2, 'urgent')
    q.push(3, 'medium')
    q.push(4, 'urgent')
    q.push(5, 'nonsense')
    assert [item.email_id for item in q] == [2, 4, 3, 5, 1]
    assert [q.pop().email_id for _ in range(5)] == [2, 4, 3, 5, 1]
    assert q.pop() is None


def test_worker_routes_queued_emails(monkeypatch, db, tenant, add_rule, make_engine):
    monkeypatch.setattr(queue_worker, '_queue', EmailPriorityQueue())
    add_rule('order_status')
    engine = make_engine('order_status', 88)
    calm, _ = engine.ingest(db, email_payload(), tenant, process=False)
    loud, _ = engine.ingest(db, email_payload(), tenant, process=False)
    queue_worker.enqueue_email(calm.id, 'medium', tenant)
    queue_worker.enqueue_email(loud.id, 'urgent', tenant)
    assert queue_worker.pending() == 2

    first = queue_worker.process_next(engine)
    assert first.email_id == loud.id
    queue_worker.process_next(engine)
    assert queue_worker.process_next(engine) is None

    db.expire_all()
    assert db.get(Email, calm.id).status == 'resolved'
    assert db.get(Email, loud.id).status == 'resolved'


def test_worker_escalates_after_repeated_failures(monkeypatch, db, tenant, make_engine):
    monkeypatch.setattr(queue_worker, '_queue', EmailPriorityQueue())
    engine = make_engine('order_status', 88)

    def explode(session, email):
        raise RuntimeError("database hiccup")
    email, _ = engine.ingest(db, email_payload(), tenant, process=False)
    monkeypatch.setattr(engine, 'process', explode)
    queue_worker.enqueue_email(email.id, 'high', tenant)

    for _ in range(queue_worker.MAX_ATTEMPTS_PER_EMAIL):
        assert queue_worker.process_next(engine) is not None
    assert queue_worker.pending() == 0
    db.expire_all()
    stored = db.get(Email, email.id)
    assert stored.status == 'escalated'
    assert stored.escalation_reason.startswith("Processing failed after 3 attempts")
