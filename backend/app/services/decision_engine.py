"""Routing of a classified email to escalation, approval or an automatic reply.

Order of evaluation for a freshly classified email:

1. escalate when confidence is below the escalation threshold, the
   classification is ``escalation`` or strongly negative sentiment fires
   the override;
2. otherwise look up the effective rule, escalating when there is none;
3. rules that require approval get a proposed reply in the approval queue;
4. everything else runs the classification handler, passes the safety
   guard and is dispatched, escalating on any failure.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import logging, re

from sqlalchemy.orm import Session

from ..core.config import EngineThresholds
from ..core.events import broadcaster, EventBroadcaster
from ..models.automation_model import ApprovalItem, AutomationRule, EscalationItem
from ..models.email_model import Email
from ..schemas.email import EmailCreate
from . import llm_client
from .activity_service import log_activity
from .automation_service import create_approval, create_escalation, get_approval, get_settings, record_rule_trigger
from .classifier import IntentClassifier
from .collaborators import Dispatcher, FulfillmentWorkflows, OrderLookup, OutboxDispatcher, SubscriptionService
from .email_service import create_email, mark_status, record_classification
from .errors import InvalidTransitionError
from .handlers import (
    ACTION_CLASSIFICATIONS,
    GenerateFn,
    HandlerContext,
    HandlerResult,
    TenantProfile,
    compose_reply,
    handler_for,
    propose_response,
    record_promo_offer,
    reply_subject,
)
from .rule_matcher import find_rule
from .safety_guard import SafetyVerdict, validate_response
from .sentiment import (
    SentimentAnalyzer,
    SentimentResult,
    analyze_sentiment,
    safe_analyze,
    sentiment_adjusted_confidence,
    sentiment_override,
)
from .taxonomy import Classification, ClassificationResult, Priority
from .thread_linker import format_thread_for_prompt, get_thread_context, link_email_to_thread

log = logging.getLogger(__name__)

REPLY_SYSTEM_PROMPT = (
    "You are a professional, empathetic customer support agent. "
    "Respond with concise, accurate, request-scoped guidance."
)

# addresses that must never receive automated mail
NON_PRODUCTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"^test", r"^demo", r"example\.com$", r"test\.com$", r"\.test$", r"user\d+", r"demo_", r"\+test", r"noreply", r"donotreply")
]

REPROCESSABLE_STATUSES = {'processing'}


def is_production_recipient(address: str) -> bool:
    return bool(address) and not any(p.search(address) for p in NON_PRODUCTION_PATTERNS)


def resolve_escalation_priority(priority: Optional[Priority], confidence: int, thresholds: EngineThresholds) -> Priority:
    if priority is not None:
        return Priority.coerce(priority)
    return Priority.HIGH if confidence < thresholds.low_confidence_high_priority else Priority.MEDIUM


class Outcome(str, Enum):
    ESCALATED = 'escalated'
    AWAITING_APPROVAL = 'awaiting_approval'
    AUTO_RESPONDED = 'auto_responded'


@dataclass
class Decision:
    outcome: Outcome
    email_id: int
    classification: str
    confidence: int
    priority: str
    reason: Optional[str] = None
    approval_id: Optional[int] = None
    escalation_id: Optional[int] = None
    response: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['outcome'] = self.outcome.value
        return data


@dataclass
class Delivery:
    sent: bool
    text: str
    verdict: Optional[SafetyVerdict] = None
    error: Optional[str] = None


def _default_generate(prompt: str) -> str:
    return llm_client.complete(prompt, system=REPLY_SYSTEM_PROMPT)


class DecisionEngine:
    def __init__(
        self,
        classifier: Optional[IntentClassifier] = None,
        sentiment_analyzer: Optional[SentimentAnalyzer] = None,
        orders: Optional[OrderLookup] = None,
        subscriptions: Optional[SubscriptionService] = None,
        workflows: Optional[FulfillmentWorkflows] = None,
        dispatcher: Optional[Dispatcher] = None,
        generate: Optional[GenerateFn] = None,
        thresholds: Optional[EngineThresholds] = None,
        events: EventBroadcaster = broadcaster,
    ):
        self.classifier = classifier or IntentClassifier()
        self.sentiment_analyzer = sentiment_analyzer or analyze_sentiment
        self.orders = orders or OrderLookup()
        self.subscriptions = subscriptions or SubscriptionService()
        self.workflows = workflows or FulfillmentWorkflows()
        self.dispatcher = dispatcher or OutboxDispatcher()
        self.generate = generate or _default_generate
        self.thresholds = thresholds or EngineThresholds.from_env()
        self.events = events

    # --- entry points ------------------------------------------------------

    def ingest(self, db: Session, payload: EmailCreate, tenant_id: str, process: bool = True):
        """Store, thread and (optionally) route an inbound email.

        Returns ``(email, decision)``; ``decision`` is ``None`` when
        processing is deferred. Duplicate deliveries raise
        ``DuplicateEmailError`` from storage.
        """
        email = create_email(db, payload, tenant_id)
        link_email_to_thread(db, email)
        if not process:
            return email, None
        return email, self.process(db, email)

    def process(self, db: Session, email: Email) -> Decision:
        if email.status not in REPROCESSABLE_STATUSES:
            raise InvalidTransitionError(f"email {email.id} is {email.status}; only processing emails can be routed")
        profile = self._profile(db, email.tenant_id)
        result = self.classifier.classify(email.body, email.subject, self._thread_prompt(db, email))
        sentiment = safe_analyze(self.sentiment_analyzer, email.body)
        override = sentiment_override(sentiment, self.thresholds)

        priority = override.priority if override else result.priority
        if result.classification is Classification.HUMAN_ESCALATION:
            priority = Priority.URGENT
        record_classification(db, email, result.classification.value, result.confidence, priority.value, result.reasoning,
                              sentiment.sentiment if sentiment else None)
        log_activity(
            db, email.tenant_id, 'email_classified', 'classification',
            email_id=email.id, customer_email=email.from_email,
            details=f"{result.classification.value} ({result.confidence}% confidence)",
            metadata={
                'priority': priority.value,
                'reasoning': result.reasoning,
                'sentiment': sentiment.sentiment if sentiment else None,
                'sentiment_scores': sentiment.scores if sentiment else None,
                'override': override.reason if override else None,
            },
        )

        if override or result.confidence < self.thresholds.escalation_confidence or result.classification is Classification.ESCALATION:
            if override:
                reason = f"Negative sentiment detected - {override.reason}"
            elif result.confidence >= self.thresholds.escalation_confidence:
                reason = f"Classified as escalation ({result.confidence}% confidence)"
            else:
                reason = f"Low confidence classification ({result.confidence}%) or complex inquiry requiring human review"
            return self.escalate(db, email, result, reason, priority)

        rule = find_rule(db, email.tenant_id, result.classification, result.confidence, self.thresholds)
        if rule is None:
            return self.escalate(db, email, result, 'No matching auto-responder rule', priority)

        ctx = self._context(db, email, result, rule, profile, sentiment)
        if rule.requires_approval:
            return self._queue_for_approval(db, email, result, rule, ctx, sentiment, priority)
        return self._auto_respond(db, email, result, rule, ctx, priority)

    # --- approval queue ----------------------------------------------------

    def approve(self, db: Session, item_id: int, tenant_id: Optional[str] = None, edited_response: Optional[str] = None) -> ApprovalItem:
        item = get_approval(db, item_id, tenant_id)
        if item.status != 'pending':
            raise InvalidTransitionError(f"approval {item.id} is {item.status}")
        email = db.query(Email).filter(Email.id == item.email_id).first()
        rule = db.query(AutomationRule).filter(AutomationRule.id == item.rule_id).first() if item.rule_id else None
        now = datetime.now(timezone.utc)
        if edited_response:
            item.original_response = item.proposed_response
            item.edited_response = edited_response
            item.was_edited = True
            item.status = 'edited'
        else:
            item.status = 'approved'
        item.reviewed_at = now
        db.commit()

        meta = item.meta or {}
        classification = Classification.coerce(item.classification)
        result = ClassificationResult(classification, item.confidence, Priority.coerce(meta.get('priority')), meta.get('reasoning') or '')
        profile = self._profile(db, email.tenant_id)
        text = edited_response or item.proposed_response
        offer = None

        if classification in ACTION_CLASSIFICATIONS:
            ctx = self._context(db, email, result, rule, profile, None)
            outcome = self._run_handler(ctx)
            if not outcome.success:
                self.escalate(db, email, result, f"Approved action failed: {outcome.error}", result.priority)
                return item
            if not edited_response:
                text = outcome.response
            offer = outcome.data.get('offer')

        delivery = self._deliver(db, email, text, classification, profile, executed_by='operator')
        if not delivery.sent:
            self.escalate(db, email, result, f"Failed to send auto-response: {delivery.error}", result.priority)
            return item
        if offer:
            record_promo_offer(db, email, offer, delivery.text)

        item.status = 'executed'
        item.executed_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(item)
        if rule is not None:
            record_rule_trigger(db, rule)
        mark_status(db, email, 'resolved', response=delivery.text, responded=True)
        log_activity(
            db, email.tenant_id, 'Sent approved reply', 'approval',
            email_id=email.id, customer_email=email.from_email, executed_by='operator',
            details=f"{classification.value} reply approved" + (" after edit" if item.was_edited else ''),
            metadata={'approval_id': item.id, 'was_edited': item.was_edited},
        )
        self._publish('email_updated', {'id': email.id, 'status': email.status})
        return item

    def edit_and_send(self, db: Session, item_id: int, response: str, tenant_id: Optional[str] = None) -> ApprovalItem:
        return self.approve(db, item_id, tenant_id=tenant_id, edited_response=response)

    def reject(self, db: Session, item_id: int, reason: str, tenant_id: Optional[str] = None) -> ApprovalItem:
        item = get_approval(db, item_id, tenant_id)
        if item.status != 'pending':
            raise InvalidTransitionError(f"approval {item.id} is {item.status}")
        item.status = 'rejected'
        item.rejection_reason = reason
        item.reviewed_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(item)
        email = db.query(Email).filter(Email.id == item.email_id).first()
        meta = item.meta or {}
        result = ClassificationResult(Classification.coerce(item.classification), item.confidence, Priority.coerce(meta.get('priority')))
        log_activity(
            db, email.tenant_id, 'Rejected automation', 'approval', status='rejected',
            email_id=email.id, customer_email=email.from_email, executed_by='operator', details=reason,
            metadata={'approval_id': item.id},
        )
        self.escalate(db, email, result, f"Rejected in approval queue: {reason}", result.priority,
                       suggested_response=item.proposed_response)
        return item

    # --- internals ---------------------------------------------------------

    def _profile(self, db: Session, tenant_id: str) -> TenantProfile:
        return TenantProfile.from_settings(tenant_id, get_settings(db, tenant_id))

    def _context(self, db, email, result, rule, profile, sentiment: Optional[SentimentResult]) -> HandlerContext:
        return HandlerContext(
            db=db, email=email, result=result, rule=rule, profile=profile,
            orders=self.orders, subscriptions=self.subscriptions, workflows=self.workflows,
            generate=self.generate, sentiment=sentiment,
        )

    def _thread_prompt(self, db: Session, email: Email) -> Optional[str]:
        try:
            context = get_thread_context(db, email.thread_id, email.tenant_id)
        except Exception as e:
            log.warning("thread_context_failed", exc_info=e, extra={"email_id": email.id})
            return None
        if context is None or len(context.emails) <= 1:
            return None
        return format_thread_for_prompt(context, exclude_email_id=email.id)

    def _run_handler(self, ctx: HandlerContext) -> HandlerResult:
        handler = handler_for(ctx.result.classification)
        try:
            return handler(ctx)
        except Exception as e:
            log.error("handler_failed", exc_info=e, extra={"email_id": ctx.email.id, "classification": ctx.result.classification.value})
            ctx.db.rollback()
            return HandlerResult.failed(str(e) or type(e).__name__)

    def _queue_for_approval(self, db, email, result, rule, ctx, sentiment, priority) -> Decision:
        proposal = propose_response(ctx)
        adjusted = sentiment_adjusted_confidence(result.confidence, sentiment)
        preview = validate_response(proposal.response, email.body, result.classification)
        metadata = {
            'priority': priority.value,
            'original_confidence': result.confidence,
            'proposal_confidence': proposal.confidence,
            'reasoning': result.reasoning,
            'sentiment': sentiment.sentiment if sentiment else None,
            'negative_score': sentiment.negative if sentiment else None,
            'safety_risk': preview.risk_level,
            'safety_violations': preview.violations,
            'order_number': proposal.order_number,
            'amount': proposal.amount,
            'proposal_error': proposal.error,
        }
        item = create_approval(db, email, rule, result.classification.value, adjusted, proposal.response, metadata)
        mark_status(db, email, 'awaiting_approval', response=proposal.response)
        log_activity(
            db, email.tenant_id, 'Queued for approval', 'approval', status='pending',
            email_id=email.id, customer_email=email.from_email,
            details=f"{rule.name}: {result.classification.value} ({adjusted}% adjusted confidence)",
            metadata={'approval_id': item.id, 'rule_id': rule.id},
        )
        log.info("email_awaiting_approval", extra={"email_id": email.id, "tenant_id": email.tenant_id, "rule_id": rule.id, "confidence": adjusted})
        self._publish('approval_created', {'id': item.id, 'email_id': email.id})
        self._publish('email_updated', {'id': email.id, 'status': email.status})
        return Decision(Outcome.AWAITING_APPROVAL, email.id, result.classification.value, result.confidence, priority.value,
                        approval_id=item.id, response=proposal.response)

    def _auto_respond(self, db, email, result, rule, ctx, priority) -> Decision:
        outcome = self._run_handler(ctx)
        if not outcome.success:
            return self.escalate(db, email, result, f"Failed to send auto-response: {outcome.error}", priority)
        delivery = self._deliver(db, email, outcome.response, result.classification, ctx.profile)
        if not delivery.sent:
            return self.escalate(db, email, result, f"Failed to send auto-response: {delivery.error}", priority)
        record_rule_trigger(db, rule)
        if outcome.data.get('offer'):
            record_promo_offer(db, email, outcome.data['offer'], delivery.text)

        if outcome.requires_human:
            email.ai_response = delivery.text
            email.is_responded = True
            db.commit()
            reason = 'Customer requested a human agent' if result.classification is Classification.HUMAN_ESCALATION \
                else f"Holding reply sent; {outcome.error or 'human follow-up required'}"
            return self.escalate(db, email, result, reason, priority, response=delivery.text)

        mark_status(db, email, 'resolved', response=delivery.text, responded=True)
        log_activity(
            db, email.tenant_id, 'Sent automated reply', 'auto_response',
            email_id=email.id, customer_email=email.from_email,
            order_number=outcome.order_number, amount=outcome.amount,
            details=f"{rule.name}: {result.classification.value}",
            metadata={'rule_id': rule.id, 'confidence': outcome.confidence, 'safety_risk': delivery.verdict.risk_level if delivery.verdict else None},
        )
        log.info("email_auto_responded", extra={"email_id": email.id, "tenant_id": email.tenant_id, "rule_id": rule.id, "confidence": outcome.confidence})
        self._publish('email_updated', {'id': email.id, 'status': email.status})
        return Decision(Outcome.AUTO_RESPONDED, email.id, result.classification.value, result.confidence, priority.value,
                        response=delivery.text)

    def _deliver(self, db: Session, email: Email, text: Optional[str], classification: Classification,
                 profile: TenantProfile, executed_by: str = 'ai') -> Delivery:
        """Safety-check then dispatch. Never raises."""
        if not text or not text.strip():
            return Delivery(False, '', None, 'Empty response')
        verdict = validate_response(text, email.body, classification)
        final = text
        if verdict.blocks_dispatch:
            log_activity(
                db, email.tenant_id, 'business_safety_violation_blocked', 'ai_safety', status='blocked',
                email_id=email.id, customer_email=email.from_email, executed_by=executed_by,
                details='; '.join(verdict.violations),
                metadata={'risk_level': verdict.risk_level, 'rules': verdict.rule_ids,
                          'corrected': verdict.corrected_response is not None, 'original_response': text[:2000]},
            )
            if not verdict.corrected_response:
                return Delivery(False, text, verdict, f"Response blocked by safety guard ({verdict.risk_level})")
            final = compose_reply(verdict.corrected_response, profile)
        if not is_production_recipient(email.from_email):
            log.warning("recipient_blocked", extra={"email_id": email.id, "tenant_id": email.tenant_id})
            return Delivery(False, final, verdict, 'Recipient address is not a deliverable customer address')
        try:
            sent = self.dispatcher.send(email.from_email, reply_subject(email.subject), final)
        except Exception as e:
            log.error("dispatch_failed", exc_info=e, extra={"email_id": email.id})
            sent = False
        if not sent:
            return Delivery(False, final, verdict, 'Dispatch failed')
        return Delivery(True, final, verdict)

    def escalate(self, db: Session, email: Email, result: ClassificationResult, reason: str,
                  priority: Optional[Priority], suggested_response: Optional[str] = None,
                  response: Optional[str] = None) -> Decision:
        priority = resolve_escalation_priority(priority, result.confidence, self.thresholds)
        item: EscalationItem = create_escalation(db, email, priority.value, reason, suggested_response)
        mark_status(db, email, 'escalated', reason=reason, response=response)
        log_activity(
            db, email.tenant_id, 'Escalated to human', 'escalation', status='pending',
            email_id=email.id, customer_email=email.from_email, details=reason,
            metadata={'escalation_id': item.id, 'priority': priority.value, 'classification': result.classification.value},
        )
        log.info("email_escalated", extra={"email_id": email.id, "tenant_id": email.tenant_id, "priority": priority.value, "reason": reason})
        self._publish('escalation_created', {'id': item.id, 'email_id': email.id, 'priority': priority.value})
        self._publish('email_updated', {'id': email.id, 'status': email.status})
        return Decision(Outcome.ESCALATED, email.id, result.classification.value, result.confidence, priority.value,
                        reason=reason, escalation_id=item.id, response=response)

    def _publish(self, event: str, data: Dict[str, Any]):
        try:
            self.events.publish(event, data)
        except Exception as e:  # pragma: no cover
            log.warning("event_publish_failed", exc_info=e, extra={"reason": event})


_default_engine: Optional[DecisionEngine] = None


def get_engine() -> DecisionEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = DecisionEngine()
    return _default_engine
