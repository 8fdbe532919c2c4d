import httpx
import pytest

from backend.app.services import llm_client
from backend.app.services.errors import LLMUnavailableError


def test_disabled_provider_raises():
    with pytest.raises(LLMUnavailableError):
        llm_client.complete("hello")


def test_gemini_without_key_raises(monkeypatch):
    monkeypatch.setenv('LLM_PROVIDER', 'gemini')
    monkeypatch.delenv('GOOGLE_API_KEY', raising=False)
    with pytest.raises(LLMUnavailableError):
        llm_client.complete("hello")
    assert llm_client.ai_diagnostics()['has_key'] is False


def _route_openrouter(monkeypatch, handler):
    real_client = httpx.Client
    monkeypatch.setenv('LLM_PROVIDER', 'openrouter')
    monkeypatch.setenv('OPENROUTER_API_KEY', 'sk-test')
    monkeypatch.setenv('OPENROUTER_MIN_INTERVAL_MS', '0')
    monkeypatch.setenv('OPENROUTER_JITTER_MS', '1')
    monkeypatch.setattr(httpx, 'Client', lambda timeout: real_client(transport=httpx.MockTransport(handler), timeout=timeout))


def test_openrouter_returns_message_text(monkeypatch):
    seen = {}

    def handler(request):
        seen['auth'] = request.headers['Authorization']
        return httpx.Response(200, json={"choices": [{"message": {"content": [{"text": '{"classification": "general"}'}]}}]})
    _route_openrouter(monkeypatch, handler)
    assert llm_client.complete("classify this", system="sys") == '{"classification": "general"}'
    assert seen['auth'] == 'Bearer sk-test'


def test_openrouter_http_error_is_recorded(monkeypatch):
    _route_openrouter(monkeypatch, lambda request: httpx.Response(500, text="upstream exploded"))
    with pytest.raises(RuntimeError):
        llm_client.complete("classify this")
    assert llm_client.LAST_ERROR['error_type'] == 'HTTP500'
    assert llm_client.ai_diagnostics()['provider'] == 'openrouter'
