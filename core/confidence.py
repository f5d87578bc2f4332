"""
Transcript confidence from Whisper output.

Whisper reports per-segment avg_logprob (negative log probability) and
no_speech_prob. exp(avg_logprob) maps into (0, 1]; segments Whisper itself
believes are silence are scaled down by (1 - no_speech_prob).
"""
import math
from typing import Any, Dict, Iterable, Optional


def _get(segment: Any, key: str) -> Optional[float]:
    # Local whisper returns dicts; the OpenAI client returns objects
    if isinstance(segment, dict):
        value = segment.get(key)
    else:
        value = getattr(segment, key, None)
    return float(value) if value is not None else None


def segment_confidence(segment: Any) -> Optional[float]:
    """Confidence of one segment in [0, 1], or None if it carries no log-probability."""
    logprob = _get(segment, "avg_logprob")
    if logprob is None:
        return None
    conf = max(0.0, min(1.0, math.exp(logprob)))
    no_speech = _get(segment, "no_speech_prob")
    if no_speech is not None:
        conf *= max(0.0, min(1.0, 1.0 - no_speech))
    return conf


def whisper_confidence(text: str, segments: Optional[Iterable[Any]] = None, no_speech_prob: Optional[float] = None) -> float:
    """
    Combined confidence for a Whisper transcription.

    Args:
        text: Transcribed text; empty text always scores 0.
        segments: Whisper segments (dicts or objects with avg_logprob / no_speech_prob).
        no_speech_prob: Top-level no_speech_prob when segments are not available.

    Returns:
        Mean segment confidence; 1 - no_speech_prob without segments; 1.0 if
        nothing else is known and text is present (hosted APIs that only return text).
    """
    if not (text or "").strip():
        return 0.0
    scores = [c for c in (segment_confidence(s) for s in (segments or [])) if c is not None]
    if scores:
        return sum(scores) / len(scores)
    if no_speech_prob is not None:
        return max(0.0, min(1.0, 1.0 - float(no_speech_prob)))
    return 1.0


def describe(confidence: float) -> Dict[str, Any]:
    """Bucketed confidence for logs and client payloads."""
    if confidence >= 0.8:
        level = "high"
    elif confidence >= 0.5:
        level = "medium"
    else:
        level = "low"
    return {"confidence": round(confidence, 3), "confidence_level": level}
