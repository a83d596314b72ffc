"""综合评分：加权融合、分级、置信度与说明文字。

评分是纯函数：相同的子分数、用途与场景总是得到相同结果。
缺失的子分数不参与加权，其余权重按比例放大到总和为 1。
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from drone_quality.core.config import COMPONENTS, ScoringConfig, SceneType, UseCase
from drone_quality.core.exceptions import AnalysisError
from drone_quality.core.models import CompositeQualityScore, ImageAnalysis, Recommendation

LOGGER = logging.getLogger(__name__)

BASE_REASONS = {
    Recommendation.EXCELLENT: "综合得分很高 ({overall})",
    Recommendation.GOOD: "综合得分良好 ({overall})",
    Recommendation.ACCEPTABLE: "综合得分可接受 ({overall})",
    Recommendation.POOR: "综合得分偏低 ({overall})",
    Recommendation.UNSUITABLE: "综合得分很低 ({overall})",
}

COMPONENT_LABELS = {
    "blur": "清晰度",
    "exposure": "曝光",
    "noise": "噪声",
    "technical": "技术参数",
    "descriptor": "特征点",
}


@dataclass(frozen=True, slots=True)
class ComponentScores:
    """五个子分数，None 表示该阶段失败或未执行。"""

    blur: Optional[float] = None
    exposure: Optional[float] = None
    noise: Optional[float] = None
    technical: Optional[float] = None
    descriptor: Optional[float] = None

    def present(self) -> Dict[str, float]:
        values: Dict[str, float] = {}
        for name in COMPONENTS:
            value = getattr(self, name)
            if value is None or not math.isfinite(value):
                continue
            values[name] = min(max(float(value), 0.0), 100.0)
        return values


ComponentInput = Union[ComponentScores, Mapping[str, Optional[float]]]


class CompositeScorer:
    """按用途权重表融合子分数并给出分级与置信度。"""

    def __init__(self, config: Optional[ScoringConfig] = None) -> None:
        self._config = config or ScoringConfig()
        self._config.validate()

    @property
    def config(self) -> ScoringConfig:
        return self._config

    def classify(self, overall: float) -> Recommendation:
        bands = self._config.bands
        if overall >= bands.excellent:
            return Recommendation.EXCELLENT
        if overall >= bands.good:
            return Recommendation.GOOD
        if overall >= bands.acceptable:
            return Recommendation.ACCEPTABLE
        if overall >= bands.poor:
            return Recommendation.POOR
        return Recommendation.UNSUITABLE

    def effective_weights(self, present: Sequence[str], use_case: UseCase) -> Dict[str, float]:
        """缺失项权重为 0，其余按比例归一化。"""

        table = self._config.weights_for(use_case).as_dict()
        total = sum(table[name] for name in present)
        if total <= 0:
            raise AnalysisError("scoring", "没有带正权重的可用子分数")
        return {name: (table[name] / total if name in present else 0.0) for name in COMPONENTS}

    def score(
        self,
        components: ComponentInput,
        use_case: UseCase = UseCase.GENERAL,
        scene_type: SceneType = SceneType.MIXED,
    ) -> CompositeQualityScore:
        use_case = UseCase(use_case)
        scene_type = SceneType(scene_type)
        if not isinstance(components, ComponentScores):
            components = ComponentScores(**{name: components.get(name) for name in COMPONENTS})
        values = components.present()
        missing = tuple(name for name in COMPONENTS if name not in values)
        weights = self.effective_weights(list(values), use_case)
        table = self._config.weights_for(use_case).as_dict()
        rules = self._config.confidence

        overall = int(round(sum(values[name] * weights[name] for name in values)))
        overall = max(0, min(100, overall))
        base = self.classify(overall)
        recommendation = base
        reasoning: List[str] = [BASE_REASONS[base].format(overall=overall)]
        confidence = 100

        critical = {name: values[name] for name in values if table[name] >= rules.critical_weight}
        for name, value in critical.items():
            if value < rules.critical_failure_floor:
                reasoning.append(f"关键指标{COMPONENT_LABELS[name]}偏低 ({value:.0f})")
        worst = min(critical.values()) if critical else None

        if worst is not None:
            if base == Recommendation.EXCELLENT and worst < rules.excellent_downgrade_floor:
                recommendation = Recommendation.GOOD
                confidence -= rules.excellent_downgrade_penalty
                reasoning.append("存在严重不足的关键指标，等级由优秀降为良好")
            elif base == Recommendation.GOOD and worst < rules.good_downgrade_floor:
                recommendation = Recommendation.ACCEPTABLE
                confidence -= rules.good_downgrade_penalty
                reasoning.append("存在严重不足的关键指标，等级由良好降为可接受")

        exceptional = [
            name
            for name, value in values.items()
            if table[name] >= rules.exceptional_weight and value >= rules.exceptional_score
        ]
        if len(exceptional) >= rules.exceptional_min_count:
            confidence += rules.exceptional_bonus
            labels = "、".join(COMPONENT_LABELS[name] for name in exceptional)
            reasoning.append(f"多项主要指标表现突出: {labels}")

        confidence += self._scene_adjustment(scene_type, values, reasoning)

        if len(values) >= 2:
            variance = float(np.var(list(values.values())))
            if variance > rules.high_variance:
                confidence -= rules.high_variance_penalty
                reasoning.append("各项指标差异较大，结果不够一致")
            elif variance < rules.low_variance:
                confidence += rules.low_variance_bonus
                reasoning.append("各项指标表现一致")

        for name in missing:
            confidence -= rules.missing_component_penalty
            reasoning.append(f"缺少{COMPONENT_LABELS[name]}分数，已按剩余指标重新归一化权重")

        confidence = max(rules.min_confidence, min(rules.max_confidence, confidence))

        return CompositeQualityScore(
            blur=values.get("blur", 0.0),
            exposure=values.get("exposure", 0.0),
            noise=values.get("noise", 0.0),
            technical=values.get("technical", 0.0),
            descriptor=values.get("descriptor", 0.0),
            overall=overall,
            recommendation=recommendation,
            confidence=int(confidence),
            reasoning=tuple(reasoning),
            base_recommendation=base,
            use_case=use_case.value,
            scene_type=scene_type.value,
            weights={name: round(weight, 6) for name, weight in weights.items()},
            missing=missing,
        )

    def photogrammetric_score(self, components: ComponentInput) -> Tuple[int, Recommendation]:
        """按摄影测量权重计算重建适用性分数（不含置信度调整）。"""

        if not isinstance(components, ComponentScores):
            components = ComponentScores(**{name: components.get(name) for name in COMPONENTS})
        values = components.present()
        weights = self.effective_weights(list(values), UseCase.PHOTOGRAMMETRIC)
        overall = int(round(sum(values[name] * weights[name] for name in values)))
        overall = max(0, min(100, overall))
        return overall, self.classify(overall)

    def _scene_adjustment(self, scene_type: SceneType, values: Mapping[str, float], reasoning: List[str]) -> int:
        rules = self._config.confidence
        if scene_type == SceneType.AERIAL_SKY:
            exposure, blur = values.get("exposure"), values.get("blur")
            if exposure is not None and blur is not None:
                if exposure < rules.aerial_exposure_ceiling and blur > rules.aerial_blur_floor:
                    reasoning.append("天空场景曝光偏低属正常，清晰度良好")
                    return rules.aerial_bonus
        elif scene_type == SceneType.GROUND_DETAIL:
            descriptor = values.get("descriptor")
            if descriptor is not None and descriptor < rules.ground_descriptor_floor:
                reasoning.append("地面细节场景特征点不足")
                return -rules.ground_penalty
        return 0


def build_recommendations(analysis: ImageAnalysis) -> List[str]:
    """根据各项分析给出拍摄与处理建议。"""

    advice: List[str] = []
    if analysis.error:
        return [f"图像无法分析: {analysis.error}"]

    if analysis.blur_score is not None and analysis.blur_score < 60:
        advice.append("画面偏模糊：提高快门速度、降低飞行速度或检查对焦与云台稳定")

    exposure = analysis.exposure_analysis
    if exposure is not None:
        clipped = False
        if exposure.over_exposure_percent > 5:
            advice.append("高光溢出较多：降低曝光补偿或启用包围曝光")
            clipped = True
        if exposure.under_exposure_percent > 5:
            advice.append("暗部欠曝较多：提高曝光或避开低太阳角时段")
            clipped = True
        if exposure.exposure_score < 60 and not clipped:
            advice.append("曝光不理想：建议使用手动曝光保持航线一致")

    noise = analysis.noise_analysis
    if noise is not None:
        if noise.noise_level > 50:
            advice.append("噪声偏高：降低 ISO，必要时降低快门速度并保持稳定")
        if noise.compression_artifacts > 30:
            advice.append("压缩伪影明显：改用更高质量的 JPEG 或 RAW/TIFF 格式")
        if noise.vignetting > 30:
            advice.append("暗角明显：适当收小光圈或在后期做镜头校正")

    descriptor = analysis.descriptor_analysis
    if descriptor is not None:
        if descriptor.keypoint_count < 200:
            advice.append("特征点不足：增加航向/旁向重叠度，避开大面积纹理单一区域")
        elif descriptor.distribution.coverage < 50:
            advice.append("特征点分布不均：调整构图使纹理覆盖整幅画面")

    metadata = analysis.metadata
    if metadata is not None and not metadata.has_location:
        advice.append("缺少 GPS 信息：开启定位写入以便空三解算")

    if not advice:
        advice.append("图像质量良好，可直接用于三维重建")
    return advice


def format_quality_report(analysis: ImageAnalysis) -> str:
    """生成多行文本的质量报告。"""

    lines = [f"图像: {analysis.name}"]
    if analysis.error:
        lines.append(f"错误: {analysis.error}")
        return "\n".join(lines)

    score = analysis.composite_score
    if score is not None:
        lines.append(f"综合分数: {score.overall}/100  等级: {score.recommendation.value}  置信度: {score.confidence}%")
        lines.append(
            "子分数: "
            + "  ".join(f"{COMPONENT_LABELS[name]} {getattr(score, name):.0f}" for name in COMPONENTS)
        )
        lines.append("评估依据:")
        lines.extend(f"  - {reason}" for reason in score.reasoning)

    descriptor = analysis.descriptor_analysis
    if descriptor is not None and descriptor.photogrammetric_score is not None:
        suitability = descriptor.reconstruction_suitability.value if descriptor.reconstruction_suitability else "-"
        lines.append(f"三维重建适用性: {descriptor.photogrammetric_score}/100 ({suitability})")

    if analysis.warnings:
        lines.append("警告:")
        lines.extend(f"  - {warning}" for warning in analysis.warnings)

    lines.append("建议:")
    lines.extend(f"  - {item}" for item in build_recommendations(analysis))
    return "\n".join(lines)
