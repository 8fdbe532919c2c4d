import os
from dataclasses import dataclass, fields


@dataclass(frozen=True)
class EngineThresholds:
    """Confidence and sentiment cut-offs used by the decision engine.

    Values are fixed defaults; ``from_env`` is the only place they can be
    overridden (``ENGINE_<FIELD_NAME>`` environment variables).
    """
    escalation_confidence: int = 60
    general_fallback_confidence: int = 70
    angry_negative: int = 75
    angry_confidence: int = 90
    frustrated_negative: int = 85
    frustrated_confidence: int = 80
    low_confidence_high_priority: int = 40

    @classmethod
    def from_env(cls) -> "EngineThresholds":
        overrides = {}
        for f in fields(cls):
            raw = os.getenv(f"ENGINE_{f.name.upper()}")
            if raw is None or raw.strip() == '':
                continue
            overrides[f.name] = int(raw)
        return cls(**overrides)


DEFAULT_TENANT = os.getenv('DEFAULT_TENANT_ID', 'default')
