"""端到端：单图分析流程与批处理入口。"""

from __future__ import annotations

import numpy as np
import pytest

from drone_quality.core.config import AnalysisConfig, ComputeConfig, SceneType, UseCase
from drone_quality.core.models import SourceImage
from drone_quality.core.progress import ProcessingProgress
from drone_quality.core.report import summarize
from drone_quality.processing import worker
from drone_quality.processing.messages import AnalyzeRequest, ProgressMessage
from drone_quality.processing.pipeline import process_batch
from drone_quality.processing.worker import ImageAnalyzer
from helpers import checkerboard, encode_png


def _config(**overrides) -> AnalysisConfig:
    values = dict(compute=ComputeConfig(enable_gpu=False), max_workers=2)
    values.update(overrides)
    return AnalysisConfig(**values)


def _textured_png(size: int = 160) -> bytes:
    rng = np.random.default_rng(11)
    board = checkerboard(size, square=8).astype(np.float64)
    return encode_png(board * 0.7 + 40 + rng.normal(0, 4, size=board.shape))


def test_analyzer_fills_every_stage(cpu_dispatcher) -> None:
    analyzer = ImageAnalyzer(_config(), cpu_dispatcher)
    messages: list[ProgressMessage] = []
    request = AnalyzeRequest(
        task_id="t1",
        source=SourceImage(name="tile.png", data=_textured_png(), mime_type="image/png"),
        use_case=UseCase.PHOTOGRAMMETRIC,
        scene_type=SceneType.GROUND_DETAIL,
    )

    try:
        analysis = analyzer.run(request, messages.append)
    finally:
        analyzer.close()

    assert analysis.error is None
    assert analysis.warnings == ()
    assert 0 <= analysis.blur_score <= 100
    assert analysis.exposure_analysis is not None
    assert analysis.noise_analysis is not None
    assert analysis.metadata is not None and analysis.metadata.file_format == "PNG"
    descriptor = analysis.descriptor_analysis
    assert descriptor is not None and descriptor.photogrammetric_score is not None
    composite = analysis.composite_score
    assert composite is not None
    assert composite.use_case == "photogrammetric"
    assert composite.weights["technical"] == 0
    assert analysis.processing_duration > 0

    percents = [message.percent for message in messages]
    assert percents == sorted(percents)
    assert percents[0] == 10 and percents[-1] == 100
    assert analysis.to_snapshot()["composite_score"]["recommendation"] == composite.recommendation.value


def test_failed_stage_is_isolated_and_weights_renormalized(cpu_dispatcher, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_noise(*args, **kwargs):
        raise RuntimeError("sensor map unavailable")

    monkeypatch.setattr(worker, "analyze_noise", broken_noise)
    analyzer = ImageAnalyzer(_config(parallel_stages=False), cpu_dispatcher)
    request = AnalyzeRequest(
        task_id="t2",
        source=SourceImage(name="tile.png", data=_textured_png(), mime_type="image/png"),
    )

    analysis = analyzer.run(request)

    assert analysis.error is None
    assert analysis.noise_analysis is None
    assert analysis.exposure_analysis is not None
    assert any(warning.startswith("noise:") for warning in analysis.warnings)
    assert analysis.composite_score is not None
    assert analysis.composite_score.missing == ("noise",)
    assert analysis.composite_score.weights["noise"] == 0


def test_process_batch_handles_valid_and_invalid_images(cpu_dispatcher) -> None:
    sources = [
        SourceImage(name="valid.png", data=_textured_png(), mime_type="image/png"),
        SourceImage(name="corrupted.png", data=b"not an image", mime_type="image/png"),
        SourceImage(name="valid_2.png", data=_textured_png(96), mime_type="image/png"),
    ]
    updates: list[ProcessingProgress] = []

    result = process_batch(sources, _config(), progress_callback=updates.append, dispatcher=cpu_dispatcher)

    assert [analysis.name for analysis in result.analyses] == ["valid.png", "corrupted.png", "valid_2.png"]
    assert len(result.succeeded) == 2
    assert len(result.failed) == 1

    failed = result.failed[0]
    assert failed.name == "corrupted.png"
    assert "无法解码" in failed.error
    assert failed.blur_score is None
    assert failed.composite_score is None

    for analysis in result.succeeded:
        assert analysis.thumbnail is not None
        assert 0 <= analysis.composite_score.overall <= 100
    assert updates[-1].current == updates[-1].total == 3

    stats = summarize(result.analyses)
    assert (stats.total, stats.succeeded, stats.failed) == (3, 2, 1)
    assert sum(stats.recommendations.values()) == 2


def test_process_batch_with_no_sources() -> None:
    assert process_batch([], _config()).analyses == []


def test_process_batch_analyzes_extreme_aspect_strip(cpu_dispatcher) -> None:
    rng = np.random.default_rng(3)
    strip = encode_png(rng.uniform(0, 255, size=(4000, 12)))

    result = process_batch(
        [SourceImage(name="strip.png", data=strip, mime_type="image/png")],
        _config(),
        dispatcher=cpu_dispatcher,
    )

    analysis = result.analyses[0]
    assert analysis.error is None
    assert analysis.composite_score is not None
