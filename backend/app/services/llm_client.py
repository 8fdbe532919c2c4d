from typing import Dict, Any, Optional
import os, logging, concurrent.futures, time, threading, random
from datetime import datetime, timezone
from concurrent.futures import TimeoutError as FuturesTimeout

from .errors import LLMUnavailableError

log = logging.getLogger(__name__)

# Last provider failure, exposed through /api/analytics/ai
LAST_ERROR: dict | None = None

# Simple in-process rate limiter for OpenRouter calls
_rate_lock = threading.Lock()
_last_or_ts: float = 0.0  # monotonic seconds
_or_cooldown_until: float = 0.0  # monotonic seconds; after repeated 429s

DEFAULT_SYSTEM_PROMPT = (
    "You are a careful customer service assistant for an online store. "
    "Follow the output format you are given exactly."
)


def current_provider() -> str:
    return os.getenv('LLM_PROVIDER', 'gemini').lower()


def _record_error(provider: str, exc: BaseException | str, model: str):
    global LAST_ERROR
    LAST_ERROR = {
        "provider": provider,
        "error_type": type(exc).__name__ if isinstance(exc, BaseException) else str(exc),
        "error_message": str(exc),
        "model": model,
        "ts": datetime.now(timezone.utc).timestamp(),
    }


def complete(prompt: str, system: Optional[str] = None, temperature: Optional[float] = None) -> str:
    """Send a single prompt to the configured provider and return its text.

    Raises ``LLMUnavailableError`` when no provider is usable and lets
    transport errors propagate; callers decide on the fallback.
    """
    provider = current_provider()
    if provider in {'off', 'none', 'disabled'}:
        raise LLMUnavailableError('llm provider disabled')
    if provider in {'openrouter', 'or'}:
        return _openrouter_call(prompt, system or DEFAULT_SYSTEM_PROMPT, temperature)
    return _gemini_call(prompt, system or DEFAULT_SYSTEM_PROMPT, temperature)


def _gemini_extract_text(resp):  # pragma: no cover
    if not resp:
        return ""
    t = getattr(resp, 'text', None)
    if t:
        return t
    try:
        return resp.candidates[0].content.parts[0].text  # type: ignore
    except (AttributeError, IndexError):
        return ""


def _gemini_call(prompt: str, system: str, temperature: Optional[float]) -> str:
    api_key = os.getenv('GOOGLE_API_KEY')
    if not api_key or os.getenv('GEMINI_FORCE_DISABLE') == '1':
        raise LLMUnavailableError('gemini not configured')
    import google.generativeai as genai
    model_name = os.getenv('GEMINI_MODEL', 'gemini-1.5-flash')
    timeout_s = float(os.getenv('GEMINI_TIMEOUT', '6'))
    genai.configure(api_key=api_key)
    config = {"temperature": temperature if temperature is not None else float(os.getenv('GEMINI_TEMPERATURE', '0.3'))}
    model = genai.GenerativeModel(model_name, system_instruction=system, generation_config=config)
    ex = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        resp = ex.submit(model.generate_content, prompt).result(timeout=timeout_s)
    except FuturesTimeout:
        _record_error('gemini', 'Timeout', model_name)
        log.warning("gemini_timeout", extra={"provider": "gemini", "reason": f">{timeout_s}s"})
        raise
    except Exception as e:
        _record_error('gemini', e, model_name)
        log.error("gemini_call_failed", exc_info=e, extra={"provider": "gemini"})
        raise
    finally:
        ex.shutdown(wait=False)
    text = _gemini_extract_text(resp).strip()
    if not text:
        _record_error('gemini', 'EmptyOutput', model_name)
        raise LLMUnavailableError('gemini returned empty text')
    return text


def _openrouter_call(prompt: str, system: str, temperature: Optional[float]) -> str:
    import httpx
    api_key = os.getenv('OPENROUTER_API_KEY')
    if not api_key:
        raise LLMUnavailableError('missing OPENROUTER_API_KEY')
    model = os.getenv('OPENROUTER_MODEL', 'openrouter/auto')
    endpoint = os.getenv('OPENROUTER_BASE', 'https://openrouter.ai/api/v1/chat/completions')
    timeout_s = float(os.getenv('OPENROUTER_TIMEOUT', os.getenv('LLM_TIMEOUT', '10')))
    max_tokens = int(os.getenv('OPENROUTER_MAX_TOKENS', '512'))
    min_interval_ms = int(os.getenv('OPENROUTER_MIN_INTERVAL_MS', '1200'))
    jitter_ms = int(os.getenv('OPENROUTER_JITTER_MS', '120'))
    headers = {
        'Authorization': f'Bearer {api_key}',
        'Content-Type': 'application/json',
        'HTTP-Referer': os.getenv('OPENROUTER_REFERRER', 'http://localhost'),
        'X-Title': os.getenv('OPENROUTER_APP_NAME', 'MailPilot'),
    }
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        "temperature": temperature if temperature is not None else float(os.getenv('OPENROUTER_TEMPERATURE', '0.3')),
        "max_tokens": max_tokens,
    }
    global _or_cooldown_until, _last_or_ts
    if time.monotonic() < _or_cooldown_until:
        raise RuntimeError('or_http_429_cooldown')
    with _rate_lock:
        elapsed_ms = (time.monotonic() - _last_or_ts) * 1000.0
        wait_ms = min_interval_ms - elapsed_ms
        if wait_ms > 0:
            time.sleep((wait_ms + random.uniform(0, max(1, jitter_ms))) / 1000.0)
        _last_or_ts = time.monotonic()

    with httpx.Client(timeout=timeout_s) as client:
        attempts = 0
        while True:
            attempts += 1
            resp = client.post(endpoint, headers=headers, json=payload)
            if resp.status_code == 429:
                retry_after = resp.headers.get('retry-after')
                try:
                    backoff_s = float(retry_after) if retry_after is not None else float(os.getenv('OPENROUTER_RATE_LIMIT_BACKOFF_S', '5'))
                except ValueError:
                    backoff_s = float(os.getenv('OPENROUTER_RATE_LIMIT_BACKOFF_S', '5'))
                backoff_s = max(1.0, backoff_s) + random.uniform(0, 0.5)
                log.warning('openrouter_rate_limited', extra={'provider': 'openrouter', 'attempts': attempts})
                if attempts >= 2:
                    with _rate_lock:
                        _or_cooldown_until = time.monotonic() + max(5.0, float(os.getenv('OPENROUTER_COOLDOWN_S', '60')))
                    _record_error('openrouter', 'RateLimited', model)
                    raise RuntimeError('or_http_429: cooldown')
                time.sleep(backoff_s)
                continue
            if resp.status_code >= 400:
                _record_error('openrouter', f'HTTP{resp.status_code}', model)
                raise RuntimeError(f'or_http_{resp.status_code}: {resp.text[:160]}')
            data = resp.json()
            choice = (data.get('choices') or [{}])[0]
            content = (choice.get('message') or {}).get('content')
            # some providers return a list of segments
            if isinstance(content, list):
                parts: list[str] = []
                for part in content:
                    if isinstance(part, dict):
                        text = part.get('text') or part.get('content')
                        if isinstance(text, str) and text.strip():
                            parts.append(text.strip())
                    elif isinstance(part, str) and part.strip():
                        parts.append(part.strip())
                content = "\n".join(parts)
            content = (content or '').strip() if isinstance(content, str) else ''
            if not content:
                _record_error('openrouter', 'EmptyOutput', model)
                raise LLMUnavailableError('openrouter returned empty content')
            return content


def ai_diagnostics() -> Dict[str, Any]:
    provider = current_provider()
    base: Dict[str, Any] = {'provider': provider, 'last_error': LAST_ERROR}
    if provider in {'openrouter', 'or'}:
        base.update({
            'model': os.getenv('OPENROUTER_MODEL', 'openrouter/auto'),
            'has_key': bool(os.getenv('OPENROUTER_API_KEY')),
            'timeout_default_s': float(os.getenv('OPENROUTER_TIMEOUT', os.getenv('LLM_TIMEOUT', '10'))),
        })
        return base
    base.update({
        'model': os.getenv('GEMINI_MODEL', 'gemini-1.5-flash'),
        'has_key': bool(os.getenv('GOOGLE_API_KEY')),
        'timeout_default_s': float(os.getenv('GEMINI_TIMEOUT', '6')),
        'force_disabled': os.getenv('GEMINI_FORCE_DISABLE') == '1',
    })
    return base
