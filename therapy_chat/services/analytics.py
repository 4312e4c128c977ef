"""Session scoring and severity breakdowns for the therapist dashboards."""
import math
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional

from therapy_chat.core.config import settings

Severity = Literal["low", "medium", "high"]

MEDIUM_RISK_INTENSITY = 0.5


def _get(item: Any, key: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(key)
    return getattr(item, key, None)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _percent(part: int, total: int) -> int:
    # Half-up rounding, so 12.5 becomes 13
    return math.floor(part / total * 100 + 0.5)


def severity_from_emotion(intensity: Optional[float], tone: Optional[str]) -> Severity:
    if tone == "negative" and intensity is not None:
        if intensity >= settings.HIGH_RISK_INTENSITY:
            return "high"
        if intensity >= MEDIUM_RISK_INTENSITY:
            return "medium"
    return "low"


def get_severity_breakdown(items: Iterable[Any]) -> Dict[str, Dict[str, int]]:
    """Counts and rounded percentages of high / medium / low severity items."""
    counts = {"high": 0, "medium": 0, "low": 0}
    for item in items:
        severity = _get(item, "severity")
        if severity in counts:
            counts[severity] += 1

    total = sum(counts.values()) or 1
    return {
        "counts": counts,
        "percentages": {key: _percent(value, total) for key, value in counts.items()},
    }


def calculate_session_score(rows: Iterable[Any]) -> Dict[str, float]:
    """
    Blend goal alignment and emotional tone into one 0..1 session score.

    Only rows with a tone or a numeric alignment score count. The tone balance is
    (sum of positive intensity - sum of negative intensity) / polar rows, mapped
    to 0..1; each component weighs 1 when it has data and 0 otherwise.
    """
    valid = [row for row in rows if _is_number(_get(row, "alignment_score")) or isinstance(_get(row, "tone"), str)]
    if not valid:
        return {"totalMessages": 0, "averageAlignment": 0, "netEmotionalToneBalance": 0, "finalScore": 0}

    alignment_scores = [_get(row, "alignment_score") for row in valid if _is_number(_get(row, "alignment_score"))]
    average_alignment = sum(alignment_scores) / (len(alignment_scores) or 1)

    positive = [_get(row, "intensity") for row in valid if _get(row, "tone") == "positive" and _is_number(_get(row, "intensity"))]
    negative = [_get(row, "intensity") for row in valid if _get(row, "tone") == "negative" and _is_number(_get(row, "intensity"))]
    tone_rows = len(positive) + len(negative)
    balance = (sum(positive) - sum(negative)) / tone_rows if tone_rows else 0
    tone_score = (balance + 1) / 2

    alignment_weight = 1 if alignment_scores else 0
    tone_weight = 1 if tone_rows else 0
    total_weight = alignment_weight + tone_weight or 1
    final_score = (average_alignment * alignment_weight + tone_score * tone_weight) / total_weight

    return {
        "totalMessages": len(valid),
        "averageAlignment": average_alignment,
        "netEmotionalToneBalance": balance,
        "finalScore": final_score,
    }


def session_analytics(logs: List[Any]) -> Dict[str, Any]:
    """Score plus severity breakdown for a session's emotion logs."""
    flagged = [{"severity": severity_from_emotion(_get(log, "intensity"), _get(log, "tone"))} for log in logs]
    return {"score": calculate_session_score(logs), "severity": get_severity_breakdown(flagged)}
