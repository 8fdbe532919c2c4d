from dataclasses import dataclass, field
from typing import List, Optional
import hashlib, logging, re, time

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..models.email_model import Email

log = logging.getLogger(__name__)

_REPLY_PREFIX = re.compile(r"^(?:(?:re|fwd?)\s*:\s*)+", re.IGNORECASE)
_WS = re.compile(r"\s+")

# both subjects must be longer than this before substring matching applies
SUBSTRING_MATCH_MIN_LEN = 10


def normalize_subject(subject: Optional[str]) -> str:
    cleaned = _WS.sub(' ', (subject or '').strip())
    cleaned = _REPLY_PREFIX.sub('', cleaned)
    return cleaned.strip().lower()


def subjects_match(a: str, b: str) -> bool:
    if a == b:
        return True
    if len(a) > SUBSTRING_MATCH_MIN_LEN and len(b) > SUBSTRING_MATCH_MIN_LEN:
        return a in b or b in a
    return False


def mint_thread_id(from_email: str, to_email: str, subject: str, salt: Optional[int] = None) -> str:
    participants = '|'.join(sorted([from_email.lower(), to_email.lower()]))
    seed = f"{participants}|{normalize_subject(subject)}".encode('utf-8')
    digest = hashlib.sha256(seed).hexdigest()[:16]
    salt = salt if salt is not None else int(time.time() * 1000)
    return f"thread_{digest}_{salt}"


def _conversation_query(db: Session, email: Email):
    a, b = email.from_email, email.to_email
    return (
        db.query(Email)
        .filter(Email.tenant_id == email.tenant_id)
        .filter(Email.id != email.id)
        .filter(
            or_(
                and_(Email.from_email == a, Email.to_email == b),
                and_(Email.from_email == b, Email.to_email == a),
            )
        )
    )


def link_email_to_thread(db: Session, email: Email) -> Optional[str]:
    """Attach ``email`` to an existing conversation or start a new one.

    Best effort: a lookup failure is logged and ``None`` returned; the
    email keeps no thread and processing continues.
    """
    try:
        target = normalize_subject(email.subject)
        thread_id = None
        prior = _conversation_query(db, email).filter(Email.thread_id.isnot(None)).order_by(Email.created_at, Email.id).all()
        for candidate in prior:
            if subjects_match(target, normalize_subject(candidate.subject)):
                thread_id = candidate.thread_id
                break
        if thread_id:
            position = db.query(Email).filter(Email.thread_id == thread_id, Email.id != email.id).count() + 1
        else:
            thread_id = mint_thread_id(email.from_email, email.to_email, email.subject)
            position = 1
        email.thread_id = thread_id
        email.thread_position = position
        email.is_thread_start = position == 1
        db.commit()
        db.refresh(email)
        log.info("email_threaded", extra={"email_id": email.id, "thread_id": thread_id, "tenant_id": email.tenant_id})
        return thread_id
    except Exception as e:
        db.rollback()
        log.warning("thread_link_failed", exc_info=e, extra={"email_id": getattr(email, 'id', None)})
        return None


@dataclass
class ThreadContext:
    thread_id: str
    emails: List[Email] = field(default_factory=list)
    customer_email: str = ''
    business_email: str = ''
    summary: str = ''


def summarize_thread(emails: List[Email]) -> str:
    if len(emails) <= 1:
        return "Single email conversation"
    customer = emails[0].from_email
    customer_msgs = sum(1 for e in emails if e.from_email == customer)
    business_msgs = len(emails) - customer_msgs
    topics: List[str] = []
    for e in emails:
        topic = normalize_subject(e.subject)
        if topic and topic not in topics:
            topics.append(topic)
    summary = (
        f"Conversation with {customer_msgs} customer messages and {business_msgs} business responses. "
        f"Topics discussed: {', '.join(topics)}. "
    )
    summary += "Extended conversation with multiple exchanges." if len(emails) > 3 else "Brief exchange."
    return summary


def get_thread_context(db: Session, thread_id: Optional[str], tenant_id: Optional[str] = None) -> Optional[ThreadContext]:
    if not thread_id:
        return None
    q = db.query(Email).filter(Email.thread_id == thread_id)
    if tenant_id:
        q = q.filter(Email.tenant_id == tenant_id)
    emails = q.order_by(Email.created_at, Email.id).all()
    if not emails:
        return None
    first = emails[0]
    return ThreadContext(
        thread_id=thread_id,
        emails=emails,
        customer_email=first.from_email,
        business_email=first.to_email,
        summary=summarize_thread(emails),
    )


def format_thread_for_prompt(context: ThreadContext, exclude_email_id: Optional[int] = None) -> str:
    lines = [
        "=== CONVERSATION THREAD CONTEXT ===",
        f"Customer: {context.customer_email}",
        f"Business: {context.business_email}",
        "",
        "CONVERSATION SUMMARY:",
        context.summary,
        "",
        "FULL CONVERSATION HISTORY:",
    ]
    for i, e in enumerate(context.emails, start=1):
        if exclude_email_id is not None and e.id == exclude_email_id:
            continue
        role = 'CUSTOMER' if e.from_email == context.customer_email else 'BUSINESS'
        stamp = e.created_at.isoformat() if e.created_at else 'unknown time'
        lines.append(f"[{i}] {role} ({stamp}):")
        lines.append(f"Subject: {e.subject}")
        lines.append(f"Message: {(e.body or '')[:800]}")
        if e.classification:
            lines.append(f"AI Classification: {e.classification} ({e.confidence or 0}% confidence)")
        lines.append("")
    lines += [
        "CONTEXT FOR AI RESPONSE:",
        "- Consider the full conversation when determining intent",
        "- A follow-up usually continues the earlier request unless it clearly changes topic",
        "- Repeated contact about the same issue raises priority",
        "=== END THREAD CONTEXT ===",
    ]
    return "\n".join(lines)
