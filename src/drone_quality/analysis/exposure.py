"""曝光分析：直方图指标、空间指标与感知亮度指标。

最终分数 = 基础直方图分数 40% + 空间分数 35% + 感知分数 25%。
空间分数由局部对比度、高光可恢复比例、暗部细节比例加权得到。
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from drone_quality.analysis.common import block_stds, clamp, luminance
from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.compute.kernels import GRADIENT_MAGNITUDE
from drone_quality.core.config import ExposureConfig
from drone_quality.core.models import ColorBalance, ExposureAnalysis, HistogramBalance

LOGGER = logging.getLogger(__name__)

CONTRAST_PERCENTILES = (5.0, 95.0)
MIDTONE_RANGE = (20.0, 80.0)


def analyze_exposure(
    pixels: np.ndarray,
    dispatcher: ComputeDispatcher,
    config: Optional[ExposureConfig] = None,
) -> ExposureAnalysis:
    config = config or ExposureConfig()
    lum = luminance(pixels)
    lum8 = np.clip(np.rint(lum), 0, 255).astype(np.uint8)
    histogram = np.bincount(lum8.ravel(), minlength=256)
    total = lum8.size

    over = float(histogram[config.overexposure_threshold + 1 :].sum()) / total * 100.0
    under = float(histogram[: config.underexposure_threshold].sum()) / total * 100.0
    low, high = trimmed_range(histogram, config.tail_trim)
    dynamic_range = float(high - low)

    average = float(lum.mean())
    skewness = _skewness(lum)
    normalized = lum / 255.0
    dark, bright = np.percentile(normalized, CONTRAST_PERCENTILES)
    contrast_ratio = float((bright + 0.05) / (dark + 0.05))
    balance = classify_balance(skewness, over, under, contrast_ratio, config)

    local_contrast = clamp(float(block_stds(normalized, config.block_size).mean()) / config.local_contrast_reference * 100.0)
    gradient = dispatcher.run(GRADIENT_MAGNITUDE, normalized)
    highlight_recovery = recoverable_percent(
        normalized >= config.highlight_threshold,
        normalized >= config.highlight_clip,
        gradient,
        config.gradient_threshold,
    )
    shadow_detail = recoverable_percent(
        normalized < config.shadow_threshold,
        normalized <= config.shadow_clip,
        gradient,
        config.gradient_threshold,
    )

    perceptual = perceptual_score(pixels, over, under)
    basic = basic_score(over, under, dynamic_range, config)
    spatial = (
        config.local_contrast_weight * local_contrast
        + config.highlight_recovery_weight * highlight_recovery
        + config.shadow_detail_weight * shadow_detail
    )
    score = clamp(config.basic_weight * basic + config.spatial_weight * spatial + config.perceptual_weight * perceptual)

    return ExposureAnalysis(
        over_exposure_percent=round(over, 2),
        under_exposure_percent=round(under, 2),
        dynamic_range=dynamic_range,
        average_brightness=round(average, 2),
        contrast_ratio=round(contrast_ratio, 2),
        histogram_skewness=round(skewness, 3),
        histogram_balance=balance,
        local_contrast=round(local_contrast, 2),
        highlight_recovery=round(highlight_recovery, 2),
        shadow_detail=round(shadow_detail, 2),
        color_balance=color_balance(pixels),
        perceptual_exposure_score=round(perceptual, 2),
        spatial_exposure_variance=round(spatial_variance(lum, config.region_grid), 2),
        exposure_score=int(round(score)),
    )


def trimmed_range(histogram: np.ndarray, tail_trim: float) -> Tuple[int, int]:
    """去掉两端各 ``tail_trim`` 比例像素后的最小/最大亮度。"""

    cumulative = np.cumsum(histogram)
    total = cumulative[-1]
    if total == 0:
        return 0, 0
    cut = total * tail_trim
    low = int(np.searchsorted(cumulative, cut, side="right"))
    high = int(np.searchsorted(cumulative, total - cut, side="left"))
    low = min(low, 255)
    high = min(max(high, low), 255)
    return low, high


def classify_balance(
    skewness: float,
    over: float,
    under: float,
    contrast_ratio: float,
    config: ExposureConfig,
) -> HistogramBalance:
    limit = config.clipping_limit
    if over > limit and under > limit:
        return HistogramBalance.HIGH_CONTRAST
    # 负偏度表示像素集中在亮部
    if over > limit or skewness < -config.skew_threshold:
        return HistogramBalance.OVEREXPOSED
    if under > limit or skewness > config.skew_threshold:
        return HistogramBalance.UNDEREXPOSED
    if contrast_ratio > config.high_contrast_ratio:
        return HistogramBalance.HIGH_CONTRAST
    if contrast_ratio < config.low_contrast_ratio:
        return HistogramBalance.LOW_CONTRAST
    return HistogramBalance.BALANCED


def recoverable_percent(
    near_clipped: np.ndarray,
    clipped: np.ndarray,
    gradient: np.ndarray,
    gradient_threshold: float,
) -> float:
    """接近裁剪的像素中仍有局部梯度（非平坦裁剪）的比例。"""

    candidates = int(near_clipped.sum())
    if candidates == 0:
        return 100.0
    flat_clipped = near_clipped & clipped & (gradient <= gradient_threshold)
    return float(candidates - int(flat_clipped.sum())) / candidates * 100.0


def basic_score(over: float, under: float, dynamic_range: float, config: ExposureConfig) -> float:
    score = 100.0 - min(over * 2.0, 30.0) - min(under * 2.0, 30.0)
    score += -20.0 + min(dynamic_range / config.optimal_dynamic_range, 1.0) * 20.0
    return clamp(score)


def perceptual_score(pixels: np.ndarray, over: float, under: float) -> float:
    """基于 CIE L* 的感知曝光分数：中间调占比、亮度分布与裁剪惩罚。"""

    rgb = np.ascontiguousarray(pixels[..., :3], dtype=np.uint8)
    lightness = cv2.cvtColor(rgb, cv2.COLOR_RGB2LAB)[..., 0].astype(np.float64) * (100.0 / 255.0)
    low, high = MIDTONE_RANGE
    midtones = float(((lightness >= low) & (lightness <= high)).mean()) * 100.0
    spread = min(float(lightness.std()) / 25.0, 1.0) * 100.0
    return clamp(0.6 * midtones + 0.4 * spread - 2.0 * (over + under))


def color_balance(pixels: np.ndarray) -> ColorBalance:
    rgb = np.ascontiguousarray(pixels[..., :3], dtype=np.uint8)
    ycrcb = cv2.cvtColor(rgb, cv2.COLOR_RGB2YCrCb).reshape(-1, 3).astype(np.float64)
    y_mean, cr_mean, cb_mean = ycrcb.mean(axis=0)
    return ColorBalance(
        luminance=round(float(y_mean), 2),
        red_chroma=round(float(cr_mean), 2),
        blue_chroma=round(float(cb_mean), 2),
    )


def spatial_variance(lum: np.ndarray, grid: int) -> float:
    """把画面切成 grid×grid 区域，返回区域平均亮度的方差。"""

    height, width = lum.shape
    rows = np.array_split(np.arange(height), min(grid, height))
    cols = np.array_split(np.arange(width), min(grid, width))
    means = [lum[r[0] : r[-1] + 1, c[0] : c[-1] + 1].mean() for r in rows for c in cols]
    return float(np.var(means))


def _skewness(values: np.ndarray) -> float:
    std = float(values.std())
    if std == 0:
        return 0.0
    centered = (values - values.mean()) / std
    return float((centered**3).mean())
