"""Last check on every outbound reply before it reaches the dispatcher.

Rules are data: each ``SafetyRule`` pairs a compiled pattern with the
violation text and risk level it raises. Add a rule by appending to
``SAFETY_RULES``.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Pattern
import logging, re

from .taxonomy import Classification

log = logging.getLogger(__name__)

RISK_ORDER = {'none': 0, 'low': 1, 'medium': 2, 'high': 3, 'critical': 4}


@dataclass(frozen=True)
class SafetyRule:
    id: str
    pattern: Pattern
    violation: str
    risk_level: str
    applies: Optional[Callable[[str, str, Classification], bool]] = None

    def check(self, response: str, request: str, classification: Classification) -> bool:
        if self.applies is not None:
            return self.applies(response, request, classification)
        return bool(self.pattern.search(response))


@dataclass
class SafetyVerdict:
    safe: bool
    violations: List[str] = field(default_factory=list)
    risk_level: str = 'none'
    rule_ids: List[str] = field(default_factory=list)
    corrected_response: Optional[str] = None

    @property
    def blocks_dispatch(self) -> bool:
        # any violation keeps the original text from the dispatcher
        return not self.safe


def _p(expr: str) -> Pattern:
    return re.compile(expr, re.IGNORECASE)


def _pause_only_request(response: str, request: str, classification: Classification) -> bool:
    lowered = response.lower()
    return (
        classification is Classification.SUBSCRIPTION_CHANGES
        and 'pause' in request.lower()
        and 'cancel' in lowered
        and 'permanent' in lowered
    )


SAFETY_RULES: List[SafetyRule] = [
    SafetyRule(
        'subscription_upsell_prevention',
        _p(r"(pause.*subscription.*(cancel.*permanent|permanently|forever))|((cancel.*permanent|permanently|forever).*pause.*subscription)"),
        'Offering permanent cancellation when customer wants to pause',
        'critical',
    ),
    SafetyRule(
        'pause_request_cancellation_offer',
        _p(r"cancel.*permanent"),
        'AI offering cancellation when customer only wants to pause subscription',
        'critical',
        applies=_pause_only_request,
    ),
    SafetyRule(
        'automatic_downsell_prevention',
        _p(r"(switch.*cheaper|downgrade.*plan|lower.*tier|reduce.*subscription)"),
        'Suggesting cheaper alternatives without customer request',
        'high',
    ),
    SafetyRule(
        'negative_product_volunteering',
        _p(r"(not organic|not kosher|not vegan|not certified|however.*not|but.*not|although.*not).*(unless.*ask|didn't.*ask)"),
        "Volunteering negative product information customer didn't ask about",
        'high',
    ),
    SafetyRule(
        'unnecessary_refund_offers',
        _p(r"(would you like.*refund|can offer.*refund|happy to refund)(?!.*customer.*ask.*refund)"),
        "Offering refunds when customer didn't request them",
        'critical',
    ),
    SafetyRule(
        'competitor_mentions',
        _p(r"(try.*competitor|check.*amazon|other.*brands|alternative.*product)"),
        'Mentioning competitors or alternative sources',
        'critical',
    ),
    SafetyRule(
        'policy_over_disclosure',
        _p(r"(unfortunately.*cannot|sorry.*unable|policy.*prevent|not allowed.*policy)"),
        'Over-explaining policy limitations',
        'medium',
    ),
]

PAUSE_ONLY_RESPONSE = (
    "I can pause your subscription for you. How long would you like it paused? "
    "I can set a specific reactivation date or pause it indefinitely until you're ready to restart.\n\n"
    "Let me know your preference and I'll take care of it right away."
)

SCOPED_RESPONSES = {
    Classification.SUBSCRIPTION_CHANGES: "I'd be happy to help with your subscription. Let me assist you with the specific changes you need.",
    Classification.ORDER_STATUS: "Let me check on your order status and get you the latest information.",
    Classification.PRODUCT: "I can help answer your product questions. What specific information do you need?",
}
DEFAULT_SCOPED_RESPONSE = "I'm here to help with your request. Let me assist you with what you need."


def corrected_response(request: str, classification: Classification) -> str:
    if classification is Classification.SUBSCRIPTION_CHANGES and 'pause' in (request or '').lower():
        return PAUSE_ONLY_RESPONSE
    return SCOPED_RESPONSES.get(classification, DEFAULT_SCOPED_RESPONSE)


def validate_response(response: str, request: str, classification) -> SafetyVerdict:
    classification = Classification.coerce(classification)
    response = response or ''
    request = request or ''
    verdict = SafetyVerdict(safe=True)
    for rule in SAFETY_RULES:
        if not rule.check(response, request, classification):
            continue
        verdict.violations.append(rule.violation)
        verdict.rule_ids.append(rule.id)
        if RISK_ORDER[rule.risk_level] > RISK_ORDER[verdict.risk_level]:
            verdict.risk_level = rule.risk_level
    if verdict.violations:
        verdict.safe = False
        log.warning(
            "safety_guard_violation",
            extra={"risk_level": verdict.risk_level, "classification": classification.value, "reason": ",".join(verdict.rule_ids)},
        )
    if verdict.risk_level == 'critical':
        verdict.corrected_response = corrected_response(request, classification)
    return verdict
