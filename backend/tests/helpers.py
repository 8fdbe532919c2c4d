import uuid

from backend.app.core.events import EventBroadcaster
from backend.app.schemas.email import EmailCreate
from backend.app.services.collaborators import (
    Dispatcher,
    FulfillmentWorkflows,
    InMemoryOrderLookup,
    SubscriptionService,
    WorkflowOutcome,
)
from backend.app.services.decision_engine import DecisionEngine
from backend.app.services.sentiment import SentimentResult
from backend.app.services.taxonomy import Classification, ClassificationResult, Priority


class FakeClassifier:
    def __init__(self, classification='general', confidence=80, priority='medium', reasoning='test'):
        self.result = ClassificationResult(Classification.coerce(classification), confidence, Priority.coerce(priority), reasoning)
        self.calls = []

    def classify(self, body, subject, thread_context=None):
        self.calls.append((body, subject, thread_context))
        return self.result


class RecordingDispatcher(Dispatcher):
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append({'to': to, 'subject': subject, 'html': html})
        return self.ok


class RecordingWorkflows(FulfillmentWorkflows):
    def __init__(self, ok=True):
        self.ok = ok
        self.refunds = []

    def issue_refund(self, tenant_id, order_number, amount):
        self.refunds.append((order_number, amount))
        return WorkflowOutcome(self.ok, '' if self.ok else 'payment provider down')

    def cancel_order(self, tenant_id, customer_email, order_number):
        if not self.ok:
            return WorkflowOutcome(False, 'warehouse rejected cancellation')
        return WorkflowOutcome(True, f"Your order #{order_number} has been cancelled.")


class RecordingSubscriptions(SubscriptionService):
    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    def change(self, tenant_id, customer_email, action, subscription_id):
        self.calls.append((action, subscription_id))
        return WorkflowOutcome(self.ok, '' if self.ok else 'no_active_subscription')


def neutral_sentiment(text):
    return SentimentResult('NEUTRAL', 70, {'positive': 10, 'negative': 10, 'neutral': 70, 'mixed': 0})


def angry_sentiment(text):
    return SentimentResult('NEGATIVE', 95, {'positive': 0, 'negative': 90, 'neutral': 10, 'mixed': 0})


def build_engine(classification='general', confidence=80, priority='medium', sentiment=neutral_sentiment,
                 orders=None, dispatcher=None, workflows=None, subscriptions=None, generate=None):
    return DecisionEngine(
        classifier=FakeClassifier(classification, confidence, priority),
        sentiment_analyzer=sentiment,
        orders=orders or InMemoryOrderLookup(),
        dispatcher=dispatcher or RecordingDispatcher(),
        workflows=workflows or RecordingWorkflows(),
        subscriptions=subscriptions or RecordingSubscriptions(),
        generate=generate or (lambda prompt: "Here is the information you asked for."),
        events=EventBroadcaster(),
    )


def email_payload(subject="Where is my order #48213?", body="Hi, can you tell me where order #48213 is?",
                  from_email="jane.doe@shopper.io", to_email="support@acme-store.io", message_id=None):
    return EmailCreate(
        message_id=message_id or f"<{uuid.uuid4().hex}@mail.shopper.io>",
        from_email=from_email,
        to_email=to_email,
        subject=subject,
        body=body,
    )
