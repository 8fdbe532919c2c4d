from sqlalchemy.orm import Session
from typing import List
import logging

from ..models.automation_model import AutomationRule
from .taxonomy import Classification

log = logging.getLogger(__name__)

# always-on rules every tenant starts with
CORE_RULES = [
    {
        'name': 'General Inquiries',
        'description': 'Catch-all for questions without a dedicated handler',
        'classification': Classification.GENERAL.value,
    },
    {
        'name': 'Escalation Handling',
        'description': 'Complex or sensitive matters go to the human team',
        'classification': Classification.ESCALATION.value,
    },
    {
        'name': 'Human Agent Requests',
        'description': 'Customer asked for a person; acknowledge and hand over',
        'classification': Classification.HUMAN_ESCALATION.value,
        'template': "Thanks for letting us know. A member of our team will personally review your message and reply as soon as possible.",
    },
]

# agent rules ship disabled and gated behind approval until an operator turns them on
AGENT_RULES = [
    ('Order Status', Classification.ORDER_STATUS),
    ('Promo Code Refunds', Classification.PROMO_REFUND),
    ('Discount Inquiries', Classification.DISCOUNT_INQUIRIES),
    ('Order Cancellations', Classification.ORDER_CANCELLATION),
    ('Subscription Changes', Classification.SUBSCRIPTION_CHANGES),
    ('Address Changes', Classification.ADDRESS_CHANGE),
    ('Product Questions', Classification.PRODUCT),
]


def seed_default_rules(db: Session, tenant_id: str) -> List[AutomationRule]:
    """Create any missing default rules for a tenant; existing ones are left untouched."""
    existing = {
        r.classification
        for r in db.query(AutomationRule.classification).filter(AutomationRule.tenant_id == tenant_id).all()
    }
    created: List[AutomationRule] = []
    for rule in CORE_RULES:
        if rule["classification"] in existing:
            continue
        created.append(AutomationRule(tenant_id=tenant_id, is_active=True, requires_approval=False, **rule))
    for name, classification in AGENT_RULES:
        if classification.value in existing:
            continue
        created.append(AutomationRule(
            tenant_id=tenant_id,
            name=name,
            classification=classification.value,
            is_active=False,
            requires_approval=True,
        ))
    if created:
        db.add_all(created)
        db.commit()
        for rule in created:
            db.refresh(rule)
        log.info("default_rules_seeded", extra={"tenant_id": tenant_id, "reason": f"{len(created)} rules"})
    return created
