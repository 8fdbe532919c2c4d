from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Classification(str, Enum):
    ORDER_STATUS = 'order_status'
    PROMO_REFUND = 'promo_refund'
    DISCOUNT_INQUIRIES = 'discount_inquiries'
    ORDER_CANCELLATION = 'order_cancellation'
    RETURN_REQUEST = 'return_request'
    SUBSCRIPTION_CHANGES = 'subscription_changes'
    CANCELLATION_REQUESTS = 'cancellation_requests'
    PAYMENT_ISSUES = 'payment_issues'
    ADDRESS_CHANGE = 'address_change'
    PRODUCT = 'product'
    ESCALATION = 'escalation'
    HUMAN_ESCALATION = 'human_escalation'
    GENERAL = 'general'

    @classmethod
    def coerce(cls, value) -> "Classification":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().lower())
        except ValueError:
            return cls.GENERAL


class Priority(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    URGENT = 'urgent'

    @classmethod
    def coerce(cls, value) -> "Priority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().lower())
        except ValueError:
            return cls.MEDIUM

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {Priority.URGENT: 0, Priority.HIGH: 1, Priority.MEDIUM: 2, Priority.LOW: 3}

CLASSIFICATION_DESCRIPTIONS = {
    Classification.ORDER_STATUS: "where is my order, tracking, delivery timing, shipping updates",
    Classification.PROMO_REFUND: "refund or credit for a promotion or discount code that was not applied",
    Classification.DISCOUNT_INQUIRIES: "asking whether any discount, coupon or promo code is available",
    Classification.ORDER_CANCELLATION: "cancel a specific order that was already placed",
    Classification.RETURN_REQUEST: "return or exchange an item",
    Classification.SUBSCRIPTION_CHANGES: "pause, resume, skip or modify a recurring subscription",
    Classification.CANCELLATION_REQUESTS: "cancel an account, membership or subscription entirely",
    Classification.PAYMENT_ISSUES: "declined cards, double charges, billing errors",
    Classification.ADDRESS_CHANGE: "change the shipping address of an order",
    Classification.PRODUCT: "questions about product details, ingredients, sizing, availability",
    Classification.ESCALATION: "complex, legal, threatening or otherwise sensitive matters",
    Classification.HUMAN_ESCALATION: "customer explicitly asks to talk to a human, manager or real person",
    Classification.GENERAL: "anything else",
}


def clamp_confidence(value, default: int = 50) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = float(default)
    if number != number:  # NaN
        number = float(default)
    return int(round(max(0.0, min(100.0, number))))


@dataclass(frozen=True)
class ClassificationResult:
    classification: Classification
    confidence: int
    priority: Priority
    reasoning: str = ''
    priority_reasoning: Optional[str] = None

    @classmethod
    def fallback(cls, reasoning: str = "Classification failed, defaulting to general") -> "ClassificationResult":
        return cls(Classification.GENERAL, 30, Priority.MEDIUM, reasoning)
