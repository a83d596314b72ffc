"""综合评分与配置校验的单元测试。"""

from __future__ import annotations

import random

import pytest

from drone_quality.analysis.scoring import (
    ComponentScores,
    CompositeScorer,
    build_recommendations,
    format_quality_report,
)
from drone_quality.core.config import (
    COMPONENTS,
    GENERAL_WEIGHTS,
    PHOTOGRAMMETRIC_WEIGHTS,
    AnalysisConfig,
    ConfidenceRules,
    ExposureConfig,
    ProcessingConfig,
    SceneType,
    ScoringConfig,
    UseCase,
    WeightTable,
)
from drone_quality.core.exceptions import AnalysisError, ConfigurationError
from drone_quality.core.models import ImageAnalysis, Recommendation


def _components(**values: float) -> ComponentScores:
    return ComponentScores(**values)


def test_default_weight_tables_sum_to_one() -> None:
    for table in (GENERAL_WEIGHTS, PHOTOGRAMMETRIC_WEIGHTS):
        assert sum(table.as_dict().values()) == pytest.approx(1.0, abs=1e-6)
    assert PHOTOGRAMMETRIC_WEIGHTS.technical == 0
    AnalysisConfig().validate()


def test_invalid_weight_table_is_rejected() -> None:
    bad = WeightTable(blur=0.5, exposure=0.5, noise=0.5, technical=0.0, descriptor=0.0)
    config = ScoringConfig(weight_tables={UseCase.GENERAL: bad, UseCase.PHOTOGRAMMETRIC: PHOTOGRAMMETRIC_WEIGHTS})

    with pytest.raises(ConfigurationError):
        CompositeScorer(config)


def test_missing_weight_table_is_rejected() -> None:
    config = ScoringConfig(weight_tables={UseCase.GENERAL: GENERAL_WEIGHTS})

    with pytest.raises(ConfigurationError):
        config.validate()


def test_other_config_sections_validate() -> None:
    with pytest.raises(ConfigurationError):
        ExposureConfig(basic_weight=0.5).validate()
    with pytest.raises(ConfigurationError):
        AnalysisConfig(max_workers=0).validate()

    limits = ProcessingConfig()
    assert limits.size_limit_for("image/tiff") == 200 * 1024 * 1024
    assert limits.size_limit_for("image/png") == 100 * 1024 * 1024
    assert limits.size_limit_for("image/webp") == 50 * 1024 * 1024


def test_overall_is_bounded_integer_and_pure() -> None:
    scorer = CompositeScorer()
    rng = random.Random(5)
    for _ in range(200):
        values = {name: rng.uniform(0, 100) for name in COMPONENTS}
        use_case = rng.choice(list(UseCase))
        scene = rng.choice(list(SceneType))

        first = scorer.score(values, use_case, scene)
        second = scorer.score(values, use_case, scene)

        assert first == second
        assert isinstance(first.overall, int)
        assert 0 <= first.overall <= 100
        assert 10 <= first.confidence <= 100
        assert sum(first.weights.values()) == pytest.approx(1.0)


def test_classification_bands_are_monotonic() -> None:
    scorer = CompositeScorer()
    ranks = [scorer.classify(value).rank for value in range(0, 101)]

    assert ranks == sorted(ranks)
    assert scorer.classify(85) == Recommendation.EXCELLENT
    assert scorer.classify(84) == Recommendation.GOOD
    assert scorer.classify(55) == Recommendation.ACCEPTABLE
    assert scorer.classify(40) == Recommendation.POOR
    assert scorer.classify(39) == Recommendation.UNSUITABLE


def test_excellent_is_downgraded_when_critical_component_fails() -> None:
    scorer = CompositeScorer()

    result = scorer.score(_components(blur=100, exposure=100, noise=25, technical=100, descriptor=100))

    assert result.overall == 85
    assert result.base_recommendation == Recommendation.EXCELLENT
    assert result.recommendation == Recommendation.GOOD
    # -20 降级，+10 多项突出，方差 900 不调整
    assert result.confidence == 90
    assert result.reasoning[0].startswith("综合得分很高")


def test_good_is_downgraded_when_critical_component_is_very_low() -> None:
    scorer = CompositeScorer()

    result = scorer.score(_components(blur=90, exposure=90, noise=10, technical=90, descriptor=90))

    assert result.overall == 74
    assert result.base_recommendation == Recommendation.GOOD
    assert result.recommendation == Recommendation.ACCEPTABLE
    # -25 降级，+10 多项突出，方差 1024 扣 15
    assert result.confidence == 70


def test_consistent_high_scores_raise_confidence() -> None:
    result = CompositeScorer().score(_components(blur=95, exposure=92, noise=94, technical=90, descriptor=93))

    assert result.recommendation == Recommendation.EXCELLENT
    assert result.confidence == 100
    assert any("表现一致" in reason for reason in result.reasoning)


def test_scene_rules_adjust_confidence() -> None:
    scorer = CompositeScorer()
    values = _components(blur=80, exposure=50, noise=70, descriptor=40)

    mixed = scorer.score(values, scene_type=SceneType.MIXED)
    aerial = scorer.score(values, scene_type=SceneType.AERIAL_SKY)
    ground = scorer.score(values, scene_type=SceneType.GROUND_DETAIL)

    assert mixed.confidence == 90
    assert aerial.confidence == 95
    assert ground.confidence == 80
    assert mixed.overall == aerial.overall == ground.overall


def test_scene_reason_precedes_consistency_reason() -> None:
    result = CompositeScorer().score(
        _components(blur=95, exposure=95, noise=95, technical=95, descriptor=10),
        scene_type=SceneType.GROUND_DETAIL,
    )

    scene = result.reasoning.index("地面细节场景特征点不足")
    spread = result.reasoning.index("各项指标差异较大，结果不够一致")
    assert scene < spread


def test_missing_components_are_renormalized() -> None:
    scorer = CompositeScorer()

    result = scorer.score(_components(exposure=80, noise=80, technical=80, descriptor=80))

    assert result.missing == ("blur",)
    assert result.weights["blur"] == 0
    assert sum(result.weights.values()) == pytest.approx(1.0)
    assert result.overall == 80
    assert any("清晰度" in reason for reason in result.reasoning)


def test_scoring_without_weighted_components_fails() -> None:
    scorer = CompositeScorer()

    with pytest.raises(AnalysisError):
        scorer.score(_components())
    with pytest.raises(AnalysisError):
        scorer.score(_components(technical=80), use_case=UseCase.PHOTOGRAMMETRIC)


def test_confidence_is_clamped_to_floor() -> None:
    rules = ConfidenceRules(missing_component_penalty=50)
    scorer = CompositeScorer(ScoringConfig(confidence=rules))

    result = scorer.score(_components(blur=70))

    assert result.confidence == 10


def test_photogrammetric_score_uses_reconstruction_weights() -> None:
    scorer = CompositeScorer()

    score, suitability = scorer.photogrammetric_score(
        _components(blur=50, exposure=50, noise=50, technical=0, descriptor=100)
    )

    assert score == 70
    assert suitability == Recommendation.GOOD


def test_report_and_recommendations() -> None:
    scorer = CompositeScorer()
    composite = scorer.score(_components(blur=40, exposure=70, noise=80, technical=60, descriptor=65))
    analysis = ImageAnalysis(id="a1", name="DJI_0001.JPG", size=1024, blur_score=40, composite_score=composite)

    advice = build_recommendations(analysis)
    report = format_quality_report(analysis)

    assert any("模糊" in item for item in advice)
    assert "DJI_0001.JPG" in report
    assert composite.reasoning[0] in report

    failed = ImageAnalysis(id="a2", name="broken.jpg", size=10, error="无法解码图像")
    assert "无法解码图像" in format_quality_report(failed)
