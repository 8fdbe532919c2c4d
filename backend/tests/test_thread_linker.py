from datetime import datetime, timedelta, timezone

from backend.app.services import thread_linker
from backend.app.services.decision_engine import Outcome
from backend.app.services.thread_linker import (
    format_thread_for_prompt,
    get_thread_context,
    link_email_to_thread,
    mint_thread_id,
    normalize_subject,
    subjects_match,
)
from backend.tests.helpers import email_payload
from backend.app.services.email_service import create_email


def test_normalize_subject_strips_reply_prefixes():
    assert normalize_subject("Re: RE:  Fwd: Order   #4821 shipped ") == "order #4821 shipped"
    assert normalize_subject("FW: hello") == "hello"
    assert normalize_subject(None) == ""


def test_substring_match_needs_long_subjects():
    assert subjects_match("order #4821 shipped", "order #4821 shipped late")
    assert not subjects_match("refund", "refund please")
    assert subjects_match("hi", "hi")


def test_thread_id_shape():
    tid = mint_thread_id("A@shop.io", "b@shop.io", "Re: Hello", salt=1700000000000)
    assert tid.startswith("thread_")
    assert tid.endswith("_1700000000000")
    assert tid == mint_thread_id("b@shop.io", "a@shop.io", "hello", salt=1700000000000)


def _store(db, tenant, **kw):
    email = create_email(db, email_payload(**kw), tenant)
    link_email_to_thread(db, email)
    return email


def test_reply_joins_existing_thread(db, tenant):
    first = _store(db, tenant, subject="Order #4821 shipped", from_email="sam@shopper.io", to_email="help@acme-store.io")
    reply = _store(db, tenant, subject="Re: Order #4821 shipped", from_email="help@acme-store.io", to_email="sam@shopper.io")
    follow = _store(db, tenant, subject="RE: Re: order #4821 SHIPPED", from_email="sam@shopper.io", to_email="help@acme-store.io")
    assert first.thread_id and first.thread_id == reply.thread_id == follow.thread_id
    assert [first.thread_position, reply.thread_position, follow.thread_position] == [1, 2, 3]
    assert first.is_thread_start and not reply.is_thread_start


def test_other_participants_start_new_thread(db, tenant):
    a = _store(db, tenant, subject="Order #4821 shipped", from_email="sam@shopper.io")
    b = _store(db, tenant, subject="Order #4821 shipped", from_email="lee@shopper.io")
    c = _store(db, tenant, subject="Totally different topic", from_email="sam@shopper.io")
    assert len({a.thread_id, b.thread_id, c.thread_id}) == 3
    assert b.thread_position == 1


def test_tenants_do_not_share_threads(db, tenant):
    a = _store(db, tenant, subject="Order #4821 shipped")
    b = _store(db, tenant + "-other", subject="Order #4821 shipped")
    assert a.thread_id != b.thread_id


def test_thread_context_prompt(db, tenant):
    now = datetime.now(timezone.utc)
    first = _store(db, tenant, subject="Pause my box", body="Please pause my subscription")
    first.created_at = now - timedelta(minutes=5)
    db.commit()
    second = _store(db, tenant, subject="Re: Pause my box", body="Any update?")
    ctx = get_thread_context(db, second.thread_id, tenant)
    assert [e.id for e in ctx.emails] == [first.id, second.id]
    assert ctx.customer_email == "jane.doe@shopper.io"
    assert "2 customer messages" in ctx.summary
    text = format_thread_for_prompt(ctx, exclude_email_id=second.id)
    assert "[1] CUSTOMER" in text
    assert "Please pause my subscription" in text
    assert "Any update?" not in text


def test_missing_thread_returns_none(db):
    assert get_thread_context(db, None) is None
    assert get_thread_context(db, "thread_doesnotexist_1") is None


def test_thread_id_depends_on_every_participant_and_subject():
    base = mint_thread_id("tom@shopper.io", "support@acme-store.io", "Refund for order 111", salt=1)
    assert base != mint_thread_id("zoe@other.io", "support@acme-store.io", "Refund for order 111", salt=1)
    assert base != mint_thread_id("tom@shopper.io", "support@acme-store.io", "Where is my parcel", salt=1)
    assert base == mint_thread_id("support@acme-store.io", "TOM@shopper.io", "Re: refund for order 111", salt=1)


def test_lookup_failure_leaves_email_unthreaded(db, tenant, make_engine, monkeypatch):
    def broken(db, email):
        raise RuntimeError("database went away")
    monkeypatch.setattr(thread_linker, "_conversation_query", broken)
    rollbacks = []
    real_rollback = db.rollback

    def tracking_rollback():
        rollbacks.append(True)
        real_rollback()
    monkeypatch.setattr(db, "rollback", tracking_rollback)

    email = create_email(db, email_payload(subject="Order #4821 shipped"), tenant)
    assert link_email_to_thread(db, email) is None
    assert rollbacks
    assert email.thread_id is None

    email, decision = make_engine('payment_issues', 85).ingest(db, email_payload(body="I was charged twice"), tenant)
    assert email.thread_id is None
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "No matching auto-responder rule"
