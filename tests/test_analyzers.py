"""像素分析器（清晰度、曝光、噪声、特征点）的单元测试。"""

from __future__ import annotations

import cv2
import numpy as np

from drone_quality.analysis.blur import analyze_blur
from drone_quality.analysis.exposure import analyze_exposure, trimmed_range
from drone_quality.analysis.features import Keypoint, analyze_features, deduplicate
from drone_quality.analysis.noise import analyze_noise, compression_artifacts, vignetting_falloff
from drone_quality.core.config import BlurConfig, FeatureConfig, MultiScaleCombine
from drone_quality.core.models import HistogramBalance
from helpers import checkerboard, gray_to_rgba


def test_checkerboard_scores_as_sharp(cpu_dispatcher) -> None:
    pixels = gray_to_rgba(checkerboard(256, square=4))

    assert analyze_blur(pixels, cpu_dispatcher) > 70


def test_box_blur_lowers_blur_score(cpu_dispatcher) -> None:
    board = checkerboard(256, square=4)
    blurred = cv2.blur(board, (11, 11))

    sharp_score = analyze_blur(gray_to_rgba(board), cpu_dispatcher)
    blurred_score = analyze_blur(gray_to_rgba(blurred), cpu_dispatcher)

    assert blurred_score < sharp_score


def test_flat_image_has_zero_blur_score(cpu_dispatcher) -> None:
    pixels = gray_to_rgba(np.full((64, 64), 128))

    assert analyze_blur(pixels, cpu_dispatcher) == 0


def test_multi_scale_minimum_never_exceeds_mean(cpu_dispatcher) -> None:
    board = cv2.GaussianBlur(checkerboard(256, square=8), (0, 0), 1.5)
    pixels = gray_to_rgba(board)

    mean_score = analyze_blur(pixels, cpu_dispatcher, BlurConfig(multi_scale=True))
    min_score = analyze_blur(pixels, cpu_dispatcher, BlurConfig(multi_scale=True, combine=MultiScaleCombine.MINIMUM))

    assert 0 <= min_score <= mean_score <= 100


def test_horizontal_ramp_is_balanced(cpu_dispatcher) -> None:
    ramp = np.tile(np.arange(256, dtype=np.uint8), (128, 1))

    result = analyze_exposure(gray_to_rgba(ramp), cpu_dispatcher)

    assert result.histogram_balance == HistogramBalance.BALANCED
    assert result.dynamic_range >= 250
    assert result.over_exposure_percent < 5
    assert result.under_exposure_percent < 5
    assert 0 <= result.exposure_score <= 100


def test_white_image_is_overexposed_and_unrecoverable(cpu_dispatcher) -> None:
    result = analyze_exposure(gray_to_rgba(np.full((64, 64), 255)), cpu_dispatcher)

    assert result.over_exposure_percent == 100
    assert result.histogram_balance == HistogramBalance.OVEREXPOSED
    # 平坦裁剪的高光没有可恢复细节
    assert result.highlight_recovery == 0


def test_black_image_is_underexposed(cpu_dispatcher) -> None:
    result = analyze_exposure(gray_to_rgba(np.zeros((64, 64))), cpu_dispatcher)

    assert result.under_exposure_percent == 100
    assert result.histogram_balance == HistogramBalance.UNDEREXPOSED
    assert result.shadow_detail == 0


def test_half_black_half_white_is_high_contrast(cpu_dispatcher) -> None:
    split = np.zeros((64, 64))
    split[:, 32:] = 255

    result = analyze_exposure(gray_to_rgba(split), cpu_dispatcher)

    assert result.histogram_balance == HistogramBalance.HIGH_CONTRAST


def test_narrow_midtone_ramp_is_low_contrast(cpu_dispatcher) -> None:
    ramp = np.tile(np.linspace(120, 135, 64), (64, 1))

    result = analyze_exposure(gray_to_rgba(ramp), cpu_dispatcher)

    assert result.histogram_balance == HistogramBalance.LOW_CONTRAST
    assert result.contrast_ratio < 3


def test_trimmed_range_ignores_sparse_tails() -> None:
    histogram = np.zeros(256, dtype=np.int64)
    histogram[100:151] = 1000
    histogram[0] = 1
    histogram[255] = 1

    low, high = trimmed_range(histogram, 0.001)

    assert (low, high) == (100, 150)


def test_strong_noise_scores_poorly(cpu_dispatcher) -> None:
    rng = np.random.default_rng(42)
    noisy = 128 + rng.normal(0, 40, size=(256, 256))

    result = analyze_noise(gray_to_rgba(noisy), cpu_dispatcher)

    assert 35 <= result.raw_standard_deviation <= 45
    assert result.noise_score < 40
    assert result.noise_level == 100


def test_clean_flat_image_scores_well(cpu_dispatcher) -> None:
    result = analyze_noise(gray_to_rgba(np.full((128, 128), 128)), cpu_dispatcher)

    assert result.raw_standard_deviation == 0
    assert result.noise_level == 0
    assert result.overall_artifact_score >= 99
    assert result.noise_score >= 90


def test_blocky_image_reports_compression_artifacts() -> None:
    rng = np.random.default_rng(3)
    blocks = rng.integers(0, 255, size=(16, 16)).astype(np.float64)
    blocky = np.kron(blocks, np.ones((8, 8)))

    assert compression_artifacts(blocky, 8) > 50
    assert compression_artifacts(np.full((64, 64), 90.0), 8) == 0


def test_radial_darkening_is_detected_as_vignetting() -> None:
    yy, xx = np.mgrid[0:200, 0:200]
    radius = np.hypot(yy - 99.5, xx - 99.5) / np.hypot(99.5, 99.5)
    vignetted = 200.0 * (1.0 - 0.5 * radius**2)

    assert vignetting_falloff(vignetted, 16) > 30
    assert vignetting_falloff(np.full((200, 200), 200.0), 16) < 1


def test_flat_image_has_few_keypoints(cpu_dispatcher) -> None:
    result = analyze_features(gray_to_rgba(np.full((400, 400), 128)), cpu_dispatcher)

    assert result.keypoint_count < 50
    assert result.descriptor_score == 0


def test_textured_image_yields_classified_keypoints(cpu_dispatcher) -> None:
    board = checkerboard(400, square=16)
    config = FeatureConfig()

    result = analyze_features(gray_to_rgba(board), cpu_dispatcher, config)
    types = result.feature_types

    assert 50 <= result.keypoint_count <= config.max_keypoints
    assert types.corners + types.edges + types.blobs + types.textured == result.keypoint_count
    assert types.corners > 0
    assert result.distribution.coverage > 90
    assert 0 <= result.descriptor_score <= 100
    assert result.photogrammetric_score is None


def test_keypoint_caps_are_respected(cpu_dispatcher) -> None:
    rng = np.random.default_rng(7)
    texture = rng.integers(0, 255, size=(512, 512))
    config = FeatureConfig(max_per_detector=50, max_keypoints=120)

    result = analyze_features(gray_to_rgba(texture), cpu_dispatcher, config)

    assert result.keypoint_count <= 120


def test_deduplicate_keeps_strongest_nearby_point() -> None:
    weak = Keypoint(x=10.0, y=10.0, response=1.0, detector="harris", strength=0.2)
    strong = Keypoint(x=12.0, y=11.0, response=1.0, detector="fast", strength=0.8)
    far = Keypoint(x=40.0, y=40.0, response=1.0, detector="blob", strength=0.1)

    kept = deduplicate([weak, strong, far], min_distance=5.0)

    assert kept == [strong, far]
