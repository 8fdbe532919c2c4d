"""Intent classification adapter.

Builds the classification prompt, calls the language model through an
injectable ``complete`` callable and turns whatever comes back into a
``ClassificationResult``. The adapter never raises: timeouts, transport
errors and unparseable output all collapse to ``general / 30 / medium``.
"""
from typing import Callable, Optional
import concurrent.futures, json, logging, os, re
from concurrent.futures import TimeoutError as FuturesTimeout

from . import llm_client
from .taxonomy import (
    Classification,
    Priority,
    ClassificationResult,
    CLASSIFICATION_DESCRIPTIONS,
    clamp_confidence,
)

log = logging.getLogger(__name__)

CompleteFn = Callable[[str], str]

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)

CLASSIFIER_SYSTEM_PROMPT = (
    "You classify inbound customer service emails for an e-commerce business. "
    "Reply with a single JSON object and nothing else."
)


def build_prompt(body: str, subject: str, thread_context: Optional[str] = None) -> str:
    categories = "\n".join(
        f"- {c.value}: {desc}" for c, desc in CLASSIFICATION_DESCRIPTIONS.items()
    )
    max_body = int(os.getenv('CLASSIFIER_MAX_BODY_CHARS', '4000'))
    if len(body) > max_body:
        body = body[:max_body] + "\n...[truncated]"
    parts = [
        "Classify the customer email below into exactly one category.",
        "",
        "Categories:",
        categories,
        "",
        "Rules, applied in order:",
        "1. FIRST check whether the customer explicitly asks to speak with a human, a manager, "
        "a supervisor or a real person. If so the classification is human_escalation and the "
        "priority is urgent, no matter what else the email says.",
        "2. Otherwise infer the intent from the meaning of the whole message, not from isolated "
        "keywords. A customer mentioning 'cancel' while asking to pause a subscription wants "
        "subscription_changes.",
        "3. Assign a priority independently of your confidence:",
        "   urgent = legal threats, safety issues, explicit human requests, extreme anger;",
        "   high = money at stake, failed deliveries, repeated contact, strong frustration;",
        "   medium = routine requests needing action;",
        "   low = general questions and feedback.",
        "",
    ]
    if thread_context:
        parts += [thread_context, ""]
    parts += [
        f"Subject: {subject}",
        "Body:",
        body,
        "",
        'Respond with JSON: {"classification": "<category>", "confidence": <0-100>, '
        '"reasoning": "<one sentence>", "priority": "<low|medium|high|urgent>", '
        '"priorityReasoning": "<one sentence>"}',
    ]
    return "\n".join(parts)


def parse_response(raw: str) -> ClassificationResult:
    """Parse model output into a result; raises ValueError when no JSON object is present."""
    if not raw or not raw.strip():
        raise ValueError('empty classifier output')
    match = _JSON_BLOCK.search(raw)
    if not match:
        raise ValueError('no JSON object in classifier output')
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError('classifier output is not an object')
    classification = Classification.coerce(data.get('classification'))
    confidence = clamp_confidence(data.get('confidence'), default=50)
    priority = Priority.coerce(data.get('priority'))
    if classification is Classification.HUMAN_ESCALATION:
        priority = Priority.URGENT
    return ClassificationResult(
        classification=classification,
        confidence=confidence,
        priority=priority,
        reasoning=str(data.get('reasoning') or ''),
        priority_reasoning=data.get('priorityReasoning') or data.get('priority_reasoning'),
    )


def _default_complete(prompt: str) -> str:
    return llm_client.complete(prompt, system=CLASSIFIER_SYSTEM_PROMPT, temperature=0.1)


class IntentClassifier:
    def __init__(self, complete: Optional[CompleteFn] = None, timeout_s: Optional[float] = None):
        self._complete = complete or _default_complete
        self._timeout_s = timeout_s if timeout_s is not None else float(os.getenv('CLASSIFIER_TIMEOUT', '20'))

    def classify(self, body: str, subject: str, thread_context: Optional[str] = None) -> ClassificationResult:
        prompt = build_prompt(body or '', subject or '', thread_context)
        ex = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            raw = ex.submit(self._complete, prompt).result(timeout=self._timeout_s)
            result = parse_response(raw)
        except FuturesTimeout:
            log.warning("classifier_timeout", extra={"reason": f">{self._timeout_s}s"})
            return ClassificationResult.fallback()
        except Exception as e:
            log.warning("classifier_failed", exc_info=e)
            return ClassificationResult.fallback()
        finally:
            ex.shutdown(wait=False)
        log.info(
            "email_classified",
            extra={
                "classification": result.classification.value,
                "confidence": result.confidence,
                "priority": result.priority.value,
            },
        )
        return result
