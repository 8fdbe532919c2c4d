"""Engine-facing interfaces to systems outside this service.

Store integrations, fulfillment workflows and the mail transport are
plugged in by subclassing these. The defaults either record locally
(``OutboxDispatcher``) or report that nothing is configured, which the
engine turns into an escalation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from ..db.database import SessionLocal
from ..models.activity_model import OutboundMessage

log = logging.getLogger(__name__)


@dataclass
class OrderInfo:
    order_number: str
    customer_email: str
    total: float
    status: str = 'processing'
    tracking_number: Optional[str] = None
    tracking_status: Optional[str] = None  # OutForDelivery | InTransit | Delivered | ...
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


@dataclass
class WorkflowOutcome:
    success: bool
    message: str = ''
    data: Dict[str, Any] = field(default_factory=dict)


class OrderLookup:
    """Read-only order and tracking data."""

    def get_order(self, tenant_id: str, order_number: str) -> Optional[OrderInfo]:
        return None

    def order_count(self, tenant_id: str, customer_email: str) -> int:
        return 0


class InMemoryOrderLookup(OrderLookup):
    def __init__(self, orders=None):
        self._orders: Dict[str, OrderInfo] = {o.order_number: o for o in (orders or [])}

    def add(self, order: OrderInfo):
        self._orders[order.order_number] = order

    def get_order(self, tenant_id: str, order_number: str) -> Optional[OrderInfo]:
        return self._orders.get(str(order_number))

    def order_count(self, tenant_id: str, customer_email: str) -> int:
        email = (customer_email or '').lower()
        return sum(1 for o in self._orders.values() if o.customer_email.lower() == email)


class SubscriptionService:
    def change(self, tenant_id: str, customer_email: str, action: str, subscription_id: Optional[str]) -> WorkflowOutcome:
        return WorkflowOutcome(False, 'Subscription platform not connected', {'error_type': 'api_error'})


class FulfillmentWorkflows:
    """Multi-step workflows that coordinate with fulfillment and payments."""

    def cancel_order(self, tenant_id: str, customer_email: str, order_number: Optional[str]) -> WorkflowOutcome:
        return WorkflowOutcome(False, 'Order cancellation workflow not configured')

    def change_address(self, tenant_id: str, customer_email: str, order_number: Optional[str], body: str) -> WorkflowOutcome:
        return WorkflowOutcome(False, 'Address change workflow not configured')

    def issue_refund(self, tenant_id: str, order_number: str, amount: float) -> WorkflowOutcome:
        return WorkflowOutcome(False, 'Refund workflow not configured')


class Dispatcher:
    def send(self, to: str, subject: str, html: str) -> bool:
        raise NotImplementedError


class OutboxDispatcher(Dispatcher):
    """Stores outgoing replies in ``outbound_messages`` for a relay to pick up."""

    def __init__(self, session_factory: Callable = SessionLocal):
        self._session_factory = session_factory

    def send(self, to: str, subject: str, html: str) -> bool:
        db = self._session_factory()
        try:
            db.add(OutboundMessage(to_email=to, subject=subject, html=html))
            db.commit()
            return True
        except Exception as e:
            db.rollback()
            log.error("outbox_write_failed", exc_info=e)
            return False
        finally:
            db.close()
