import pytest

from backend.app.models.activity_model import ActivityLog
from backend.app.models.automation_model import EscalationItem
from backend.app.models.email_model import Email
from backend.app.models.settings_model import PromoCodeConfig
from backend.app.services.automation_service import update_escalation_status
from backend.app.services.collaborators import InMemoryOrderLookup, OrderInfo
from backend.app.services.decision_engine import Outcome, is_production_recipient
from backend.app.services.errors import DuplicateEmailError, InvalidTransitionError, NotFoundError
from backend.app.services.handlers import HUMAN_REVIEW_MESSAGE
from backend.tests.helpers import (
    RecordingDispatcher,
    RecordingSubscriptions,
    RecordingWorkflows,
    angry_sentiment,
    email_payload,
)


def _actions(db, email_id):
    return [a.action for a in db.query(ActivityLog).filter(ActivityLog.email_id == email_id).order_by(ActivityLog.id)]


# --- routing ---------------------------------------------------------------

def test_confidence_below_60_escalates(db, tenant, add_rule, make_engine):
    add_rule('product', requires_approval=True)
    email, decision = make_engine('product', 59).ingest(db, email_payload(subject="Mug size", body="How big is the mug?"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "Low confidence classification (59%) or complex inquiry requiring human review"
    assert email.status == 'escalated'


def test_confidence_of_60_is_not_escalated(db, tenant, add_rule, make_engine):
    add_rule('product', requires_approval=True)
    email, decision = make_engine('product', 60).ingest(db, email_payload(subject="Mug size", body="How big is the mug?"), tenant)
    assert decision.outcome is Outcome.AWAITING_APPROVAL
    assert email.status == 'awaiting_approval'
    assert decision.approval_id is not None


def test_escalation_class_escalates_regardless_of_confidence(db, tenant, add_rule, make_engine):
    add_rule('escalation', requires_approval=False)
    _, decision = make_engine('escalation', 95).ingest(db, email_payload(body="My lawyer will be in touch"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "Classified as escalation (95% confidence)"


def test_angry_customer_escalates_urgent(db, tenant, add_rule, make_engine):
    add_rule('order_status')
    dispatcher = RecordingDispatcher()
    engine = make_engine('order_status', 92, 'low', sentiment=angry_sentiment, dispatcher=dispatcher)
    email, decision = engine.ingest(db, email_payload(body="This is the third time I ask. Where is order #48213?!"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.priority == 'urgent'
    assert decision.reason.startswith("Negative sentiment detected - Very angry customer detected (90% negative")
    assert dispatcher.sent == []
    item = db.query(EscalationItem).filter(EscalationItem.email_id == email.id).one()
    assert item.priority == 'urgent'
    assert item.status == 'pending'


def test_order_status_auto_response(db, tenant, add_rule, make_engine):
    rule = add_rule('order_status')
    orders = InMemoryOrderLookup([OrderInfo('48213', 'jane.doe@shopper.io', 64.0, tracking_status='InTransit',
                                            carrier='UPS', tracking_number='1Z999AA10123456784')])
    dispatcher = RecordingDispatcher()
    engine = make_engine('order_status', 88, orders=orders, dispatcher=dispatcher)
    email, decision = engine.ingest(db, email_payload(), tenant)

    assert decision.outcome is Outcome.AUTO_RESPONDED
    assert email.status == 'resolved'
    assert email.is_responded is True
    assert len(dispatcher.sent) == 1
    sent = dispatcher.sent[0]
    assert sent['to'] == 'jane.doe@shopper.io'
    assert sent['subject'] == 'Re: Where is my order #48213?'
    assert "is on its way with UPS" in sent['html']
    assert "1Z999AA10123456784" in sent['html']
    db.refresh(rule)
    assert rule.trigger_count == 1
    assert rule.last_triggered is not None
    assert 'Sent automated reply' in _actions(db, email.id)


def test_promo_refund_issues_capped_credit(db, tenant, add_rule, make_engine):
    add_rule('promo_refund', refund_type='percentage', refund_value=20, refund_cap=5)
    orders = InMemoryOrderLookup([OrderInfo('48213', 'jane.doe@shopper.io', 40.0)])
    workflows = RecordingWorkflows()
    engine = make_engine('promo_refund', 85, orders=orders, workflows=workflows)
    payload = email_payload(subject="Promo code not applied", body="I forgot to use SPRING20 on order #48213, can I get the discount?")
    email, decision = engine.ingest(db, payload, tenant)

    assert decision.outcome is Outcome.AUTO_RESPONDED
    assert workflows.refunds == [('48213', 5.0)]
    assert "$5.00" in decision.response
    refund_log = db.query(ActivityLog).filter(ActivityLog.email_id == email.id, ActivityLog.action == 'promo_refund_issued').one()
    assert refund_log.amount == 5.0


def test_order_status_without_number_escalates(db, tenant, add_rule, make_engine):
    add_rule('order_status')
    dispatcher = RecordingDispatcher()
    _, decision = make_engine('order_status', 88, dispatcher=dispatcher).ingest(
        db, email_payload(subject="Where is my stuff", body="It has been a week and nothing arrived"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "Failed to send auto-response: No order number found in email"
    assert dispatcher.sent == []


def test_failed_refund_escalates(db, tenant, add_rule, make_engine):
    add_rule('promo_refund', refund_type='percentage', refund_value=20)
    orders = InMemoryOrderLookup([OrderInfo('48213', 'jane.doe@shopper.io', 40.0)])
    engine = make_engine('promo_refund', 85, orders=orders, workflows=RecordingWorkflows(ok=False))
    email, decision = engine.ingest(db, email_payload(body="Code didn't apply on order #48213"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "Failed to send auto-response: payment provider down"


def test_no_rule_escalates(db, tenant, make_engine):
    _, decision = make_engine('payment_issues', 85).ingest(db, email_payload(body="I was charged twice"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "No matching auto-responder rule"


def test_low_confidence_falls_back_to_general_rule(db, tenant, add_rule, make_engine):
    add_rule('general')
    dispatcher = RecordingDispatcher()
    _, decision = make_engine('payment_issues', 65, dispatcher=dispatcher).ingest(db, email_payload(body="Is my card saved?"), tenant)
    assert decision.outcome is Outcome.AUTO_RESPONDED
    assert "Here is the information you asked for." in dispatcher.sent[0]['html']


def test_dispatch_failure_escalates(db, tenant, add_rule, make_engine):
    add_rule('order_status')
    engine = make_engine('order_status', 88, dispatcher=RecordingDispatcher(ok=False))
    email, decision = engine.ingest(db, email_payload(), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "Failed to send auto-response: Dispatch failed"
    assert email.is_responded is False


def test_non_production_recipient_is_never_mailed(db, tenant, add_rule, make_engine):
    add_rule('order_status')
    dispatcher = RecordingDispatcher()
    engine = make_engine('order_status', 88, dispatcher=dispatcher)
    _, decision = engine.ingest(db, email_payload(from_email="test.buyer@shopper.io"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert dispatcher.sent == []
    assert not is_production_recipient("someone@example.com")
    assert not is_production_recipient("noreply@shopper.io")
    assert is_production_recipient("jane.doe@shopper.io")


def test_critical_reply_is_replaced_before_sending(db, tenant, add_rule, make_engine):
    add_rule('general')
    dispatcher = RecordingDispatcher()
    engine = make_engine('general', 85, dispatcher=dispatcher, generate=lambda p: "You could check Amazon for this.")
    email, decision = engine.ingest(db, email_payload(subject="Question", body="Do you sell gift cards?"), tenant)
    assert decision.outcome is Outcome.AUTO_RESPONDED
    html = dispatcher.sent[0]['html']
    assert "Amazon" not in html
    assert "I'm here to help with your request" in html
    assert 'business_safety_violation_blocked' in _actions(db, email.id)


def test_high_risk_reply_is_blocked(db, tenant, add_rule, make_engine):
    add_rule('general')
    dispatcher = RecordingDispatcher()
    engine = make_engine('general', 85, dispatcher=dispatcher, generate=lambda p: "You should downgrade your plan.")
    _, decision = engine.ingest(db, email_payload(subject="Question", body="How does billing work?"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "Failed to send auto-response: Response blocked by safety guard (high)"
    assert dispatcher.sent == []


def _loyalty_promo(db, tenant):
    promo = PromoCodeConfig(tenant_id=tenant, promo_code='LOYAL5', usage_type='general_inquiry',
                            discount_type='fixed_amount', discount_amount='5')
    db.add(promo)
    db.commit()
    return promo


def _offers(db, email_id):
    return db.query(ActivityLog).filter(ActivityLog.email_id == email_id, ActivityLog.action == 'promo_code_offered').count()


def test_promo_offer_counted_once_sent(db, tenant, add_rule, make_engine):
    add_rule('discount_inquiries')
    promo = _loyalty_promo(db, tenant)
    orders = InMemoryOrderLookup([OrderInfo('48213', 'jane.doe@shopper.io', 40.0)])
    dispatcher = RecordingDispatcher()
    engine = make_engine('discount_inquiries', 85, orders=orders, dispatcher=dispatcher)
    email, decision = engine.ingest(db, email_payload(subject="Any discounts?", body="Do you have a code for me?"), tenant)
    assert decision.outcome is Outcome.AUTO_RESPONDED
    assert "LOYAL5" in dispatcher.sent[0]['html']
    db.refresh(promo)
    assert promo.usage_count == 1
    assert _offers(db, email.id) == 1


def test_failed_send_does_not_spend_promo_offer(db, tenant, add_rule, make_engine):
    add_rule('discount_inquiries')
    promo = _loyalty_promo(db, tenant)
    orders = InMemoryOrderLookup([OrderInfo('48213', 'jane.doe@shopper.io', 40.0)])
    engine = make_engine('discount_inquiries', 85, orders=orders, dispatcher=RecordingDispatcher(ok=False))
    email, decision = engine.ingest(db, email_payload(subject="Any discounts?", body="Do you have a code for me?"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "Failed to send auto-response: Dispatch failed"
    db.refresh(promo)
    assert promo.usage_count == 0
    assert _offers(db, email.id) == 0


def test_medium_risk_reply_is_never_sent(db, tenant, add_rule, make_engine):
    add_rule('general')
    dispatcher = RecordingDispatcher()
    engine = make_engine('general', 85, dispatcher=dispatcher, generate=lambda p: "Unfortunately we cannot ship to PO boxes.")
    email, decision = engine.ingest(db, email_payload(subject="Shipping", body="Can you ship to my PO box?"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.reason == "Failed to send auto-response: Response blocked by safety guard (medium)"
    assert dispatcher.sent == []
    assert 'business_safety_violation_blocked' in _actions(db, email.id)


def test_human_request_gets_ack_and_urgent_escalation(db, tenant, add_rule, make_engine):
    add_rule('human_escalation', template="A teammate from {company_name} will reply personally.")
    dispatcher = RecordingDispatcher()
    engine = make_engine('human_escalation', 90, 'low', dispatcher=dispatcher)
    email, decision = engine.ingest(db, email_payload(body="Please let me talk to a real person"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.priority == 'urgent'
    assert decision.reason == "Customer requested a human agent"
    assert "A teammate from our store will reply personally." in dispatcher.sent[0]['html']
    assert email.is_responded is True
    assert email.priority == 'urgent'


def test_generation_failure_sends_holding_reply(db, tenant, add_rule, make_engine):
    add_rule('general')

    def broken(prompt):
        raise RuntimeError("no provider")
    dispatcher = RecordingDispatcher()
    engine = make_engine('general', 85, dispatcher=dispatcher, generate=broken)
    _, decision = engine.ingest(db, email_payload(subject="Question", body="Do you ship to Canada?"), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert dispatcher.sent[0]['html'] == HUMAN_REVIEW_MESSAGE


def test_classifier_fallback_escalates(db, tenant, add_rule, make_engine):
    add_rule('general')
    _, decision = make_engine('general', 30, 'medium').ingest(db, email_payload(), tenant)
    assert decision.outcome is Outcome.ESCALATED
    assert decision.priority == 'medium'
    assert "(30%)" in decision.reason


def test_sentiment_failure_does_not_stop_processing(db, tenant, add_rule, make_engine):
    add_rule('order_status')

    def broken(text):
        raise RuntimeError("scorer offline")
    email, decision = make_engine('order_status', 88, sentiment=broken).ingest(db, email_payload(), tenant)
    assert decision.outcome is Outcome.AUTO_RESPONDED
    assert email.sentiment is None


def test_deferred_ingest_then_process(db, tenant, add_rule, make_engine):
    add_rule('order_status')
    engine = make_engine('order_status', 88)
    email, decision = engine.ingest(db, email_payload(), tenant, process=False)
    assert decision is None
    assert email.status == 'processing'
    assert engine.process(db, email).outcome is Outcome.AUTO_RESPONDED
    with pytest.raises(InvalidTransitionError):
        engine.process(db, email)


def test_duplicate_delivery_rejected(db, tenant, make_engine):
    engine = make_engine('payment_issues', 85)
    payload = email_payload(message_id="<dup-1@mail.shopper.io>")
    engine.ingest(db, payload, tenant)
    with pytest.raises(DuplicateEmailError):
        engine.ingest(db, payload, tenant)
    assert db.query(Email).filter(Email.tenant_id == tenant, Email.message_id == "<dup-1@mail.shopper.io>").count() == 1
    # same message id is fine for another tenant
    engine.ingest(db, payload, tenant + "-b")


# --- approval queue ----------------------------------------------------------

def _queued(db, tenant, add_rule, make_engine, classification='product', body="How big is the mug?", **engine_kw):
    rule = add_rule(classification, requires_approval=True)
    engine = make_engine(classification, 80, **engine_kw)
    email, decision = engine.ingest(db, email_payload(subject="Question", body=body), tenant)
    assert decision.outcome is Outcome.AWAITING_APPROVAL
    return engine, email, decision, rule


def test_approve_sends_proposed_reply(db, tenant, add_rule, make_engine):
    dispatcher = RecordingDispatcher()
    engine, email, decision, rule = _queued(db, tenant, add_rule, make_engine, dispatcher=dispatcher)
    item = engine.approve(db, decision.approval_id, tenant)
    assert item.status == 'executed'
    assert item.executed_at is not None
    db.refresh(email)
    db.refresh(rule)
    assert email.status == 'resolved'
    assert rule.trigger_count == 1
    assert dispatcher.sent[0]['html'] == decision.response
    with pytest.raises(InvalidTransitionError):
        engine.approve(db, decision.approval_id, tenant)


def test_approving_action_runs_the_workflow(db, tenant, add_rule, make_engine):
    subs = RecordingSubscriptions()
    dispatcher = RecordingDispatcher()
    engine, email, decision, _ = _queued(db, tenant, add_rule, make_engine, 'subscription_changes',
                                         body="Please pause my subscription #90210 for a month", subscriptions=subs, dispatcher=dispatcher)
    assert subs.calls == []
    assert "I can pause your subscription #90210" in decision.response
    engine.approve(db, decision.approval_id, tenant)
    assert subs.calls == [('pause', '90210')]
    assert "successfully paused your subscription #90210" in dispatcher.sent[0]['html']


def test_failed_approved_action_escalates(db, tenant, add_rule, make_engine):
    engine, email, decision, _ = _queued(db, tenant, add_rule, make_engine, 'subscription_changes',
                                         body="Please pause my subscription", subscriptions=RecordingSubscriptions(ok=False))
    item = engine.approve(db, decision.approval_id, tenant)
    assert item.status == 'approved'
    db.refresh(email)
    assert email.status == 'escalated'
    assert email.escalation_reason == "Approved action failed: no_active_subscription"


def test_reject_escalates_with_suggestion(db, tenant, add_rule, make_engine):
    engine, email, decision, _ = _queued(db, tenant, add_rule, make_engine)
    item = engine.reject(db, decision.approval_id, "Tone is off", tenant)
    assert item.status == 'rejected'
    assert item.rejection_reason == "Tone is off"
    db.refresh(email)
    assert email.status == 'escalated'
    esc = db.query(EscalationItem).filter(EscalationItem.email_id == email.id).one()
    assert esc.reason == "Rejected in approval queue: Tone is off"
    assert esc.ai_suggested_response == decision.response


def test_edit_and_send_uses_operator_text(db, tenant, add_rule, make_engine):
    dispatcher = RecordingDispatcher()
    engine, email, decision, _ = _queued(db, tenant, add_rule, make_engine, dispatcher=dispatcher)
    item = engine.edit_and_send(db, decision.approval_id, "The mug holds 350ml. Thanks, Kai", tenant)
    assert item.was_edited is True
    assert item.original_response == decision.response
    assert item.status == 'executed'
    assert dispatcher.sent[0]['html'] == "The mug holds 350ml. Thanks, Kai"
    db.refresh(email)
    assert email.ai_response == "The mug holds 350ml. Thanks, Kai"


def test_approval_lookup_is_tenant_scoped(db, tenant, add_rule, make_engine):
    engine, _, decision, _ = _queued(db, tenant, add_rule, make_engine)
    with pytest.raises(NotFoundError):
        engine.approve(db, decision.approval_id, tenant + "-other")


# --- escalation lifecycle --------------------------------------------------

def test_escalation_transitions(db, tenant, make_engine):
    email, decision = make_engine('payment_issues', 85).ingest(db, email_payload(body="charged twice"), tenant)
    item = update_escalation_status(db, tenant, decision.escalation_id, 'in_progress', notes="looking")
    assert item.status == 'in_progress'
    item = update_escalation_status(db, tenant, decision.escalation_id, 'resolved')
    assert item.resolved_at is not None
    db.refresh(email)
    assert email.status == 'resolved'
    with pytest.raises(InvalidTransitionError):
        update_escalation_status(db, tenant, decision.escalation_id, 'in_progress')
    with pytest.raises(InvalidTransitionError):
        update_escalation_status(db, tenant, decision.escalation_id, 'reopened')
    assert update_escalation_status(db, tenant, decision.escalation_id, 'closed').status == 'closed'
