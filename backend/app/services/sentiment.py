from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
import logging, re

from textblob import TextBlob

from ..core.config import EngineThresholds
from .taxonomy import Priority

log = logging.getLogger(__name__)

POSITIVE_WORDS = ['good', 'great', 'excellent', 'happy', 'satisfied', 'love', 'awesome', 'perfect', 'wonderful', 'amazing', 'thanks', 'appreciate']
NEGATIVE_WORDS = [
    'bad', 'terrible', 'awful', 'hate', 'disappointed', 'frustrated', 'angry', 'horrible', 'worst', 'broken',
    'upset', 'unhappy', 'ridiculous', 'unacceptable', 'lawsuit', 'lawyer', 'scam', 'furious',
]


@dataclass(frozen=True)
class SentimentResult:
    sentiment: str  # POSITIVE | NEGATIVE | NEUTRAL | MIXED
    confidence: int
    scores: Dict[str, int] = field(default_factory=dict)
    reasoning: str = ''

    @property
    def negative(self) -> int:
        return int(self.scores.get('negative', 0))


@dataclass(frozen=True)
class SentimentOverride:
    priority: Priority
    reason: str


SentimentAnalyzer = Callable[[str], SentimentResult]


def _hits(words, lowered: str) -> int:
    return sum(1 for w in words if re.search(rf"\b{re.escape(w)}\b", lowered))


def analyze_sentiment(text: str) -> SentimentResult:
    """Score text with TextBlob polarity reinforced by a support-email lexicon.

    Scores are 0-100; confidence is the winning score.
    """
    text = text or ''
    lowered = text.lower()
    polarity = TextBlob(text).sentiment.polarity
    pos_hits = _hits(POSITIVE_WORDS, lowered)
    neg_hits = _hits(NEGATIVE_WORDS, lowered)
    # exclamation runs read as agitation in support mail
    if neg_hits and re.search(r"!{2,}", text):
        neg_hits += 1

    positive = min(100, round(max(polarity, 0.0) * 100) + pos_hits * 20)
    negative = min(100, round(max(-polarity, 0.0) * 100) + neg_hits * 20)
    mixed = 0
    if positive >= 30 and negative >= 30:
        mixed = min(70, (pos_hits + neg_hits) * 15 + 10)
    neutral = max(0, 100 - max(positive, negative, mixed))
    scores = {'positive': positive, 'negative': negative, 'neutral': neutral, 'mixed': mixed}

    label, top = max(
        (('NEGATIVE', negative), ('POSITIVE', positive), ('MIXED', mixed), ('NEUTRAL', neutral)),
        key=lambda kv: kv[1],
    )
    reasoning = f"polarity={polarity:.2f} positive_terms={pos_hits} negative_terms={neg_hits}"
    return SentimentResult(sentiment=label, confidence=int(top), scores=scores, reasoning=reasoning)


def sentiment_override(result: Optional[SentimentResult], thresholds: EngineThresholds) -> Optional[SentimentOverride]:
    if result is None or result.sentiment != 'NEGATIVE':
        return None
    negative = result.negative
    if negative > thresholds.angry_negative and result.confidence > thresholds.angry_confidence:
        return SentimentOverride(
            Priority.URGENT,
            f"Very angry customer detected ({negative}% negative sentiment with {result.confidence}% confidence)",
        )
    if negative > thresholds.frustrated_negative and result.confidence > thresholds.frustrated_confidence:
        return SentimentOverride(
            Priority.HIGH,
            f"Highly frustrated customer detected ({negative}% negative sentiment)",
        )
    return None


def sentiment_adjusted_confidence(base: int, result: Optional[SentimentResult]) -> int:
    """Lower approval confidence for upset customers, nudge it up for happy ones."""
    if result is None:
        return base
    adjusted = float(base)
    if result.sentiment == 'NEGATIVE':
        negative = result.negative
        if negative > 75 and result.confidence > 90:
            adjusted -= 25
        elif negative > 60 and result.confidence > 80:
            adjusted -= 15
        elif negative > 45 and result.confidence > 70:
            adjusted -= 8
    elif result.sentiment == 'POSITIVE' and result.confidence > 80:
        adjusted += 5
    return int(round(max(10.0, min(95.0, adjusted))))


def safe_analyze(analyzer: SentimentAnalyzer, text: str) -> Optional[SentimentResult]:
    """Run the analyzer; a failing scorer yields ``None`` and the caller proceeds without it."""
    try:
        return analyzer(text)
    except Exception as e:
        log.warning("sentiment_analysis_failed", exc_info=e)
        return None
