"""批处理结果的汇总统计。"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional

from drone_quality.core.models import ImageAnalysis, Recommendation


@dataclass(slots=True)
class AnalysisStats:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    average_overall: Optional[float] = None
    average_confidence: Optional[float] = None
    average_duration_ms: Optional[float] = None
    recommendations: dict[str, int] = field(default_factory=dict)


def summarize(analyses: Iterable[ImageAnalysis]) -> AnalysisStats:
    """统计成功/失败数量、平均综合分与各分级数量。"""

    items = list(analyses)
    scored = [item.composite_score for item in items if item.composite_score is not None]
    durations = [item.processing_duration for item in items if item.ok]
    counter = Counter(score.recommendation.value for score in scored)

    return AnalysisStats(
        total=len(items),
        succeeded=sum(1 for item in items if item.ok),
        failed=sum(1 for item in items if not item.ok),
        average_overall=_mean(score.overall for score in scored),
        average_confidence=_mean(score.confidence for score in scored),
        average_duration_ms=_mean(durations),
        recommendations={level.value: counter.get(level.value, 0) for level in Recommendation},
    )


def _mean(values: Iterable[float]) -> Optional[float]:
    collected = list(values)
    if not collected:
        return None
    return sum(collected) / len(collected)
