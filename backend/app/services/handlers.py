"""Per-classification reply builders.

``HANDLERS`` run when a rule allows immediate sending and may perform the
underlying action (refund, subscription change, ...). ``propose_response``
builds the text shown in the approval queue without side effects.
Every handler returns a ``HandlerResult``; the engine treats any failure
the same way.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
import logging, re

from sqlalchemy.orm import Session

from ..models.automation_model import AutomationRule
from ..models.email_model import Email
from ..models.settings_model import PromoCodeConfig, TenantSettings
from .activity_service import count_recent_offers, log_activity
from .collaborators import FulfillmentWorkflows, OrderInfo, OrderLookup, SubscriptionService
from .sentiment import SentimentResult
from .taxonomy import Classification, ClassificationResult

log = logging.getLogger(__name__)

GenerateFn = Callable[[str], str]

HUMAN_REVIEW_MESSAGE = (
    "Hello!\n\n"
    "Thank you for contacting us. Your inquiry requires specialized assistance that our AI agent "
    "cannot provide at this time.\n\n"
    "A human team member will review your message and respond within 24 hours."
)

ORDER_PATTERNS = [
    re.compile(r"#(\d{4,})"),
    re.compile(r"order\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"order\s*number\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"ord[er]*-(\d{4,})", re.IGNORECASE),
    re.compile(r"\b(\d{5,})\b"),
]

SUBSCRIPTION_PATTERNS = [
    re.compile(r"subscription\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"sub\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"membership\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"#(\d{4,})"),
]

EMPATHY_OPENERS = {
    1: "",
    2: "Thanks for getting in touch.",
    3: "Thank you for reaching out, I'm happy to help.",
    4: "Thank you so much for reaching out. I understand how important this is to you.",
    5: "Thank you so much for reaching out, and I'm truly sorry for any trouble this has caused. I completely understand how important this is to you.",
}


@dataclass
class TenantProfile:
    tenant_id: str
    company_name: str = 'our store'
    agent_name: str = 'Kai'
    agent_title: str = 'AI Customer Service Agent'
    salutation: str = 'Best regards'
    signature_footer: Optional[str] = None
    empathy_level: int = 3
    knowledge_context: Optional[str] = None
    enable_first_time_offers: bool = True
    enable_general_offers: bool = True

    @classmethod
    def from_settings(cls, tenant_id: str, row: Optional[TenantSettings]) -> "TenantProfile":
        if row is None:
            return cls(tenant_id=tenant_id)
        return cls(
            tenant_id=tenant_id,
            company_name=row.company_name or 'our store',
            agent_name=row.ai_agent_name or 'Kai',
            agent_title=row.ai_agent_title or 'AI Customer Service Agent',
            salutation=row.salutation or 'Best regards',
            signature_footer=row.signature_footer,
            empathy_level=min(5, max(1, row.empathy_level or 3)),
            knowledge_context=row.knowledge_context,
            enable_first_time_offers=bool(row.enable_first_time_customer_offers),
            enable_general_offers=bool(row.enable_general_inquiry_offers),
        )


@dataclass
class HandlerContext:
    db: Session
    email: Email
    result: ClassificationResult
    rule: Optional[AutomationRule]
    profile: TenantProfile
    orders: OrderLookup
    subscriptions: SubscriptionService
    workflows: FulfillmentWorkflows
    generate: GenerateFn
    sentiment: Optional[SentimentResult] = None


@dataclass
class HandlerResult:
    success: bool
    response: Optional[str] = None
    confidence: int = 0
    error: Optional[str] = None
    # the customer got a holding reply but a person still has to act
    requires_human: bool = False
    order_number: Optional[str] = None
    amount: Optional[float] = None
    data: Dict = field(default_factory=dict)

    @classmethod
    def failed(cls, error: str) -> "HandlerResult":
        return cls(success=False, error=error)


# --- extraction helpers ----------------------------------------------------

def _first_match(patterns, *texts) -> Optional[str]:
    joined = "\n".join(t for t in texts if t)
    for pattern in patterns:
        m = pattern.search(joined)
        if m:
            return m.group(1)
    return None


def extract_order_number(subject: str, body: str) -> Optional[str]:
    return _first_match(ORDER_PATTERNS, subject, body)


def extract_subscription_id(subject: str, body: str) -> Optional[str]:
    return _first_match(SUBSCRIPTION_PATTERNS, subject, body)


def detect_subscription_action(text: str) -> Optional[str]:
    lowered = (text or '').lower()
    if re.search(r"\b(pause|paus(ed|ing)|hold|skip)\b", lowered):
        return 'pause'
    if re.search(r"\b(resume|reactivate|restart|unpause)\b", lowered):
        return 'resume'
    if re.search(r"\bcancel", lowered):
        return 'cancel'
    return None


def reply_subject(subject: str) -> str:
    subject = subject or ''
    if subject.lower().startswith('re:'):
        return subject
    return f"Re: {subject}"


def compose_reply(text: str, profile: TenantProfile) -> str:
    signature = [f"{profile.salutation},", profile.agent_name, f"{profile.agent_title} | {profile.company_name}"]
    if profile.signature_footer:
        signature.append(profile.signature_footer)
    return f"Hello,\n\n{text.strip()}\n\n" + "\n".join(signature)


# --- order status ----------------------------------------------------------

def order_status_message(order: OrderInfo) -> str:
    carrier = order.carrier or 'the carrier'
    eta = order.estimated_delivery.strftime('%B %d') if order.estimated_delivery else None
    tag = (order.tracking_status or '').replace('_', '').replace(' ', '').lower()
    if tag == 'outfordelivery':
        return f"Great news! Your order #{order.order_number} is out for delivery today with {carrier} and should arrive soon."
    if tag == 'intransit':
        msg = f"Your order #{order.order_number} is on its way with {carrier}."
        if order.tracking_number:
            msg += f" Tracking number: {order.tracking_number}."
        if eta:
            msg += f" Estimated delivery: {eta}."
        return msg
    if tag == 'delivered':
        return (
            f"Our records show that order #{order.order_number} has been delivered. "
            "If you can't find the package, reply to this email and we'll sort it out right away."
        )
    return f"Your order #{order.order_number} is currently {order.status}. We'll email you tracking details as soon as it ships."


def handle_order_status(ctx: HandlerContext) -> HandlerResult:
    order_number = extract_order_number(ctx.email.subject, ctx.email.body)
    if not order_number:
        return HandlerResult.failed('No order number found in email')
    try:
        order = ctx.orders.get_order(ctx.profile.tenant_id, order_number)
    except Exception as e:
        log.warning("order_lookup_failed", exc_info=e, extra={"email_id": ctx.email.id})
        order = None
    if order is None:
        text = (
            f"I'm checking on your order #{order_number} status for you. "
            "We are looking into this and will get back to you shortly with an update."
        )
        return HandlerResult(True, compose_reply(text, ctx.profile), 70, order_number=order_number)
    return HandlerResult(True, compose_reply(order_status_message(order), ctx.profile), 95, order_number=order_number)


# --- discounts -------------------------------------------------------------

def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _usage_compatible(promo: PromoCodeConfig, usage: str, profile: TenantProfile) -> bool:
    if usage == 'first_time_customer':
        return promo.usage_type in ('first_time_customer', 'both') and profile.enable_first_time_offers
    if usage == 'general_discount':
        return promo.usage_type in ('general_inquiry', 'both') and profile.enable_general_offers
    if usage == 'promo_refund':
        return promo.usage_type in ('refund_only', 'both')
    return False


def find_applicable_promo_codes(db: Session, profile: TenantProfile, usage: str, now: Optional[datetime] = None) -> List[PromoCodeConfig]:
    now = now or datetime.now(timezone.utc)
    rows = (
        db.query(PromoCodeConfig)
        .filter(
            PromoCodeConfig.tenant_id == profile.tenant_id,
            PromoCodeConfig.is_active.is_(True),
            PromoCodeConfig.eligible_for_automation.is_(True),
        )
        .order_by(PromoCodeConfig.id)
        .all()
    )
    applicable = []
    for promo in rows:
        start, end = _aware(promo.valid_from), _aware(promo.valid_until)
        if start and now < start:
            continue
        if end and now > end:
            continue
        if _usage_compatible(promo, usage, profile):
            applicable.append(promo)
    return applicable


def customer_eligible_for_promo(db: Session, promo: PromoCodeConfig, usage: str, customer_email: str, order_count: int) -> bool:
    if usage == 'first_time_customer':
        return order_count == 0
    if usage == 'general_discount':
        recent = count_recent_offers(db, promo.tenant_id, customer_email, promo.offer_frequency_days or 90)
        return recent < (promo.max_offers_per_customer or 1)
    return True


def format_discount(promo: PromoCodeConfig) -> str:
    amount = str(promo.discount_amount).strip().rstrip('%').lstrip('$')
    return f"{amount}%" if promo.discount_type == 'percentage' else f"${amount}"


def _select_promo(ctx: HandlerContext):
    customer = ctx.email.from_email
    order_count = ctx.orders.order_count(ctx.profile.tenant_id, customer)
    usage = 'first_time_customer' if order_count == 0 else 'general_discount'
    for promo in find_applicable_promo_codes(ctx.db, ctx.profile, usage):
        if customer_eligible_for_promo(ctx.db, promo, usage, customer, order_count):
            return promo, usage
    return None, usage


def _offer_text(promo: PromoCodeConfig, usage: str) -> str:
    lead = "Welcome! As a first-time customer" if usage == 'first_time_customer' else "Thanks for being a loyal customer! As a thank you"
    return f"{lead}, you can use code {promo.promo_code} for {format_discount(promo)} off your next order."


DECLINE_TEXT = (
    "Thanks for asking about discounts! We don't have a code available for your account right now, "
    "but keep an eye on your inbox for upcoming promotions."
)


def handle_discount_inquiry(ctx: HandlerContext) -> HandlerResult:
    promo, usage = _select_promo(ctx)
    if promo is None:
        return HandlerResult(True, compose_reply(DECLINE_TEXT, ctx.profile), 75)
    offer = {'promo_code_id': promo.id, 'promo_code': promo.promo_code, 'usage': usage, 'discount': format_discount(promo)}
    return HandlerResult(True, compose_reply(_offer_text(promo, usage), ctx.profile), 85, data={'offer': offer})


def record_promo_offer(db: Session, email: Email, offer: Dict, sent_text: str) -> bool:
    """Count an offer against the code once the reply carrying it went out.

    Returns False when the sent text no longer names the code (operator
    edit or safety correction), in which case nothing is recorded.
    """
    if offer['promo_code'] not in (sent_text or ''):
        return False
    promo = db.query(PromoCodeConfig).filter(PromoCodeConfig.id == offer['promo_code_id']).first()
    if promo is not None:
        promo.usage_count = (promo.usage_count or 0) + 1
        db.commit()
    log_activity(
        db, email.tenant_id, 'promo_code_offered', 'promo_code',
        email_id=email.id, customer_email=email.from_email,
        details=f"Offered {offer['promo_code']} ({offer['discount']})",
        metadata={'promo_code': offer['promo_code'], 'usage': offer['usage']},
    )
    return True


# --- promo refunds ---------------------------------------------------------

@dataclass
class RefundCalculation:
    eligible: bool
    amount: float = 0.0
    reason: str = ''


def calculate_refund(rule: AutomationRule, order_total: float, order_count: int = 1) -> RefundCalculation:
    """Refund owed for a missed promotion under a rule's refund settings.

    Percentage values above 1 are percents (20 -> 20%), values up to 1 are
    fractions (0.2 -> 20%).
    """
    total = float(order_total or 0)
    if rule.min_order_amount is not None and total < rule.min_order_amount:
        return RefundCalculation(False, 0.0, f"Order amount ${total:.2f} is below minimum threshold of ${rule.min_order_amount:.2f}")
    if rule.max_order_amount is not None and total > rule.max_order_amount:
        return RefundCalculation(False, 0.0, f"Order amount ${total:.2f} exceeds maximum threshold of ${rule.max_order_amount:.2f}")
    if rule.first_time_customer_only and order_count > 1:
        return RefundCalculation(False, 0.0, "This promotion is limited to first-time customers")
    value = float(rule.refund_value or 0)
    if rule.refund_type == 'fixed_amount':
        amount = min(value, total)
    else:
        rate = value / 100.0 if value > 1 else value
        amount = total * rate
    if rule.refund_cap is not None:
        amount = min(amount, float(rule.refund_cap))
    amount = round(max(amount, 0.0), 2)
    if amount <= 0:
        return RefundCalculation(False, 0.0, "No refund amount is configured for this promotion")
    return RefundCalculation(True, amount, '')


def _refund_plan(ctx: HandlerContext):
    if ctx.rule is None:
        return None, HandlerResult.failed('No refund configuration available')
    order_number = extract_order_number(ctx.email.subject, ctx.email.body)
    if not order_number:
        return None, HandlerResult.failed('No order number found in email')
    order = ctx.orders.get_order(ctx.profile.tenant_id, order_number)
    if order is None:
        return None, HandlerResult.failed(f'Order #{order_number} not found')
    count = ctx.orders.order_count(ctx.profile.tenant_id, ctx.email.from_email)
    return (order, calculate_refund(ctx.rule, order.total, count)), None


def _refund_text(order_number: str, calc: RefundCalculation) -> str:
    if not calc.eligible:
        return (
            f"Thanks for reaching out about the promotion on order #{order_number}. "
            f"I reviewed the order against the promotion terms and it doesn't qualify: {calc.reason}."
        )
    return (
        f"Thanks for reaching out about the promotion on order #{order_number}. "
        f"I've issued a credit of ${calc.amount:.2f} to your original payment method. "
        "You should see it within 5-10 business days."
    )


def handle_promo_refund(ctx: HandlerContext) -> HandlerResult:
    plan, failure = _refund_plan(ctx)
    if failure:
        return failure
    order, calc = plan
    if not calc.eligible:
        return HandlerResult(True, compose_reply(_refund_text(order.order_number, calc), ctx.profile), 85, order_number=order.order_number)
    outcome = ctx.workflows.issue_refund(ctx.profile.tenant_id, order.order_number, calc.amount)
    if not outcome.success:
        return HandlerResult.failed(outcome.message or 'Refund could not be issued')
    log_activity(
        ctx.db, ctx.profile.tenant_id, 'promo_refund_issued', 'refund',
        email_id=ctx.email.id, customer_email=ctx.email.from_email,
        order_number=order.order_number, amount=calc.amount,
    )
    return HandlerResult(True, compose_reply(_refund_text(order.order_number, calc), ctx.profile), 90,
                         order_number=order.order_number, amount=calc.amount)


# --- delegated workflows ---------------------------------------------------

def handle_order_cancellation(ctx: HandlerContext) -> HandlerResult:
    order_number = extract_order_number(ctx.email.subject, ctx.email.body)
    outcome = ctx.workflows.cancel_order(ctx.profile.tenant_id, ctx.email.from_email, order_number)
    if not outcome.success:
        return HandlerResult.failed(outcome.message or 'Order cancellation workflow failed')
    return HandlerResult(True, compose_reply(outcome.message, ctx.profile), 90, order_number=order_number, data=outcome.data)


def handle_address_change(ctx: HandlerContext) -> HandlerResult:
    order_number = extract_order_number(ctx.email.subject, ctx.email.body)
    outcome = ctx.workflows.change_address(ctx.profile.tenant_id, ctx.email.from_email, order_number, ctx.email.body)
    if not outcome.success:
        return HandlerResult.failed(outcome.message or 'Address change workflow failed')
    return HandlerResult(True, compose_reply(outcome.message, ctx.profile), 90, order_number=order_number, data=outcome.data)


# --- subscriptions ---------------------------------------------------------

SUBSCRIPTION_SUCCESS = {
    'pause': "Perfect! I've successfully paused your subscription{ref}. You won't be charged for future deliveries until you choose to resume it. You can reactivate anytime through your account dashboard or by contacting us.",
    'resume': "Great news! Your subscription{ref} has been reactivated. Your next delivery will be scheduled according to your regular plan.",
    'cancel': "I've processed the cancellation of your subscription{ref}. You won't be charged for any future deliveries.",
}

SUBSCRIPTION_PROPOSALS = {
    'pause': "I can pause your subscription{ref} for you so you won't be charged for future deliveries until you resume it.",
    'resume': "I can reactivate your subscription{ref} so deliveries continue on your regular plan.",
    'cancel': "I can cancel your subscription{ref} so you won't be charged for any future deliveries.",
}


def handle_subscription_change(ctx: HandlerContext) -> HandlerResult:
    action = detect_subscription_action(f"{ctx.email.subject}\n{ctx.email.body}")
    if action is None:
        return HandlerResult.failed('Could not determine the requested subscription change')
    sub_id = extract_subscription_id(ctx.email.subject, ctx.email.body)
    outcome = ctx.subscriptions.change(ctx.profile.tenant_id, ctx.email.from_email, action, sub_id)
    if not outcome.success:
        return HandlerResult.failed(outcome.message or f'Subscription {action} failed')
    # the reply states exactly what the subscription platform confirmed
    message = outcome.message or SUBSCRIPTION_SUCCESS[action].format(ref=f" #{sub_id}" if sub_id else '')
    return HandlerResult(True, compose_reply(message, ctx.profile), 90, data={'action': action, 'subscription_id': sub_id})


# --- general / generated ---------------------------------------------------

def build_generation_prompt(ctx: HandlerContext) -> str:
    profile = ctx.profile
    lines = [
        f"You are {profile.agent_name}, the {profile.agent_title} for {profile.company_name}.",
        f"Write the body of a reply to the customer email below. Empathy level: {profile.empathy_level} of 5.",
        "Only address what the customer asked. Do not offer refunds, discounts, cancellations, downgrades "
        "or other products unless the customer requested them, and never mention competitors.",
        "Do not include a greeting or a signature. Plain text only.",
    ]
    if profile.knowledge_context:
        lines += ["", "Business knowledge:", profile.knowledge_context[:3000]]
    lines += [
        "",
        f"Classification: {ctx.result.classification.value}",
        f"Subject: {ctx.email.subject}",
        "Customer email:",
        (ctx.email.body or '')[:4000],
    ]
    return "\n".join(lines)


def _template_text(ctx: HandlerContext) -> Optional[str]:
    if ctx.rule is None or not ctx.rule.template:
        return None
    try:
        return ctx.rule.template.format(company_name=ctx.profile.company_name, agent_name=ctx.profile.agent_name)
    except (KeyError, IndexError, ValueError):
        return ctx.rule.template


def handle_general(ctx: HandlerContext) -> HandlerResult:
    try:
        generated = (ctx.generate(build_generation_prompt(ctx)) or '').strip()
    except Exception as e:
        log.warning("reply_generation_failed", exc_info=e, extra={"email_id": ctx.email.id})
        generated = ''
    if generated:
        opener = EMPATHY_OPENERS.get(ctx.profile.empathy_level, '')
        text = f"{opener}\n\n{generated}" if opener else generated
        return HandlerResult(True, compose_reply(text, ctx.profile), 80)
    return HandlerResult(True, HUMAN_REVIEW_MESSAGE, 15, requires_human=True, error='Reply generation unavailable')


def handle_human_escalation(ctx: HandlerContext) -> HandlerResult:
    text = _template_text(ctx) or "Thanks for letting us know. A member of our team will personally review your message and reply as soon as possible."
    return HandlerResult(True, compose_reply(text, ctx.profile), 90, requires_human=True)


HANDLERS: Dict[Classification, Callable[[HandlerContext], HandlerResult]] = {
    Classification.ORDER_STATUS: handle_order_status,
    Classification.DISCOUNT_INQUIRIES: handle_discount_inquiry,
    Classification.PROMO_REFUND: handle_promo_refund,
    Classification.ORDER_CANCELLATION: handle_order_cancellation,
    Classification.ADDRESS_CHANGE: handle_address_change,
    Classification.SUBSCRIPTION_CHANGES: handle_subscription_change,
    Classification.HUMAN_ESCALATION: handle_human_escalation,
}

# approving one of these runs its handler so the action actually happens
ACTION_CLASSIFICATIONS = {
    Classification.DISCOUNT_INQUIRIES,
    Classification.PROMO_REFUND,
    Classification.ORDER_CANCELLATION,
    Classification.ADDRESS_CHANGE,
    Classification.SUBSCRIPTION_CHANGES,
}


def handler_for(classification: Classification) -> Callable[[HandlerContext], HandlerResult]:
    return HANDLERS.get(classification, handle_general)


# --- approval proposals ----------------------------------------------------

def propose_response(ctx: HandlerContext) -> HandlerResult:
    """Text for the approval queue; performs no action."""
    classification = ctx.result.classification
    try:
        if classification is Classification.ORDER_STATUS:
            status = handle_order_status(ctx)
            if not status.success:
                return HandlerResult(True, HUMAN_REVIEW_MESSAGE, 15, error=status.error)
            return status
        if classification is Classification.SUBSCRIPTION_CHANGES:
            action = detect_subscription_action(f"{ctx.email.subject}\n{ctx.email.body}")
            if action is None:
                return HandlerResult(True, compose_reply(
                    "I'd be happy to help with your subscription. Could you let me know which change you'd like to make?",
                    ctx.profile), 60)
            sub_id = extract_subscription_id(ctx.email.subject, ctx.email.body)
            text = SUBSCRIPTION_PROPOSALS[action].format(ref=f" #{sub_id}" if sub_id else '')
            return HandlerResult(True, compose_reply(text, ctx.profile), 90, data={'action': action})
        if classification is Classification.PROMO_REFUND:
            plan, failure = _refund_plan(ctx)
            if failure:
                return HandlerResult(True, HUMAN_REVIEW_MESSAGE, 15, error=failure.error)
            order, calc = plan
            return HandlerResult(True, compose_reply(_refund_text(order.order_number, calc), ctx.profile), 90 if calc.eligible else 85,
                                 order_number=order.order_number, amount=calc.amount if calc.eligible else None)
        if classification is Classification.DISCOUNT_INQUIRIES:
            promo, usage = _select_promo(ctx)
            text = _offer_text(promo, usage) if promo else DECLINE_TEXT
            return HandlerResult(True, compose_reply(text, ctx.profile), 85 if promo else 75)
        if classification is Classification.HUMAN_ESCALATION:
            return handle_human_escalation(ctx)
        return handle_general(ctx)
    except Exception as e:
        log.warning("proposal_failed", exc_info=e, extra={"email_id": ctx.email.id})
        return HandlerResult(True, HUMAN_REVIEW_MESSAGE, 15, error=str(e))
