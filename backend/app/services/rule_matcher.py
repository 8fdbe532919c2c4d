from typing import Optional
import logging

from sqlalchemy.orm import Session

from ..core.config import EngineThresholds
from ..models.automation_model import AutomationRule
from .taxonomy import Classification

log = logging.getLogger(__name__)


def _active_rule(db: Session, tenant_id: str, classification: str) -> Optional[AutomationRule]:
    return (
        db.query(AutomationRule)
        .filter(
            AutomationRule.tenant_id == tenant_id,
            AutomationRule.classification == classification,
            AutomationRule.is_active.is_(True),
        )
        .order_by(AutomationRule.id)
        .first()
    )


def find_rule(
    db: Session,
    tenant_id: str,
    classification: Classification,
    confidence: int,
    thresholds: EngineThresholds,
) -> Optional[AutomationRule]:
    """Return the single effective rule for a classification.

    An exact active match always wins. The ``general`` catch-all is only
    consulted when there is no exact match and confidence is below the
    fallback threshold.
    """
    classification = Classification.coerce(classification)
    rule = _active_rule(db, tenant_id, classification.value)
    if rule is not None:
        return rule
    if confidence < thresholds.general_fallback_confidence and classification is not Classification.GENERAL:
        rule = _active_rule(db, tenant_id, Classification.GENERAL.value)
        if rule is not None:
            log.info(
                "rule_general_fallback",
                extra={"tenant_id": tenant_id, "classification": classification.value, "confidence": confidence, "rule_id": rule.id},
            )
    return rule
