"""噪声与伪影分析。"""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from drone_quality.analysis.common import block_stds, clamp, luminance
from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.compute.kernels import GRADIENT_MAGNITUDE
from drone_quality.core.config import NoiseConfig
from drone_quality.core.models import NoiseAnalysis

LOGGER = logging.getLogger(__name__)

MAX_SNR = 100.0
MIN_EDGE_PIXELS = 16
MIN_TILE_EDGE = 16
ABERRATION_TILES = 2


def analyze_noise(
    pixels: np.ndarray,
    dispatcher: ComputeDispatcher,
    config: Optional[NoiseConfig] = None,
) -> NoiseAnalysis:
    config = config or NoiseConfig()
    lum = luminance(pixels)

    raw_std = float(block_stds(lum, config.block_size).mean())
    noise_level = clamp(raw_std / config.reference_sigma * 100.0)
    snr = MAX_SNR if raw_std == 0 else min(float(lum.mean()) / raw_std, MAX_SNR)

    compression = compression_artifacts(lum, config.compression_block_size)
    aberration = chromatic_aberration(pixels, dispatcher, config)
    vignetting = vignetting_falloff(lum, config.vignetting_bins)
    artifact_score = clamp(100.0 - (compression + aberration + vignetting) / 3.0)

    score = (
        100.0
        - min(noise_level * config.noise_penalty_weight, config.noise_penalty_cap)
        - min((100.0 - artifact_score) * config.artifact_penalty_weight, config.artifact_penalty_cap)
        + min(snr / 2.0, config.snr_bonus_cap)
    )

    return NoiseAnalysis(
        raw_standard_deviation=round(raw_std, 3),
        noise_level=round(noise_level, 2),
        snr_ratio=round(snr, 3),
        compression_artifacts=round(compression, 2),
        chromatic_aberration=round(aberration, 2),
        vignetting=round(vignetting, 2),
        overall_artifact_score=round(artifact_score, 2),
        noise_score=int(round(clamp(score))),
    )


def compression_artifacts(lum: np.ndarray, block: int) -> float:
    """比较块边界与块内部的相邻像素差，块效应越明显分数越高。"""

    ratios: list[float] = []
    for diffs in (np.abs(np.diff(lum, axis=1)), np.abs(np.diff(lum, axis=0)).T):
        positions = np.arange(diffs.shape[1])
        on_boundary = (positions + 1) % block == 0
        if not on_boundary.any() or on_boundary.all():
            continue
        boundary = float(diffs[:, on_boundary].mean())
        inside = float(diffs[:, ~on_boundary].mean())
        if inside > 0:
            ratios.append(boundary / inside)
        elif boundary > 0:
            ratios.append(2.0)
        else:
            ratios.append(1.0)
    if not ratios:
        return 0.0
    return clamp((float(np.mean(ratios)) - 1.0) * 100.0)


def chromatic_aberration(pixels: np.ndarray, dispatcher: ComputeDispatcher, config: NoiseConfig) -> float:
    """按通道提取 Sobel 边缘图，以相位相关估计 R/B 相对 G 的错位。"""

    channels = [pixels[..., index].astype(np.float32) / 255.0 for index in range(3)]
    red, green, blue = (dispatcher.run(GRADIENT_MAGNITUDE, channel) for channel in channels)
    if int((green > config.edge_threshold).sum()) < MIN_EDGE_PIXELS:
        return 0.0

    height, width = green.shape
    tile_h, tile_w = height // ABERRATION_TILES, width // ABERRATION_TILES
    if min(tile_h, tile_w) < MIN_TILE_EDGE:
        tiles = [(slice(0, height), slice(0, width))]
    else:
        tiles = [
            (slice(r * tile_h, (r + 1) * tile_h), slice(c * tile_w, (c + 1) * tile_w))
            for r in range(ABERRATION_TILES)
            for c in range(ABERRATION_TILES)
        ]

    shifts: list[float] = []
    for rows, cols in tiles:
        reference = np.ascontiguousarray(green[rows, cols], dtype=np.float64)
        if int((reference > config.edge_threshold).sum()) < MIN_EDGE_PIXELS:
            continue
        worst = 0.0
        for other in (red, blue):
            candidate = np.ascontiguousarray(other[rows, cols], dtype=np.float64)
            (dx, dy), _ = cv2.phaseCorrelate(reference, candidate)
            worst = max(worst, float(np.hypot(dx, dy)))
        shifts.append(worst)

    if not shifts:
        return 0.0
    return clamp(float(np.mean(shifts)) / config.max_aberration_shift * 100.0)


def vignetting_falloff(lum: np.ndarray, bins: int) -> float:
    """拟合径向亮度曲线 b(r) = b0 + b1·r² + b2·r⁴，返回中心到角落的衰减百分比。"""

    height, width = lum.shape
    yy, xx = np.mgrid[0:height, 0:width]
    cy, cx = (height - 1) / 2.0, (width - 1) / 2.0
    radius = np.hypot(yy - cy, xx - cx)
    max_radius = float(radius.max())
    if max_radius == 0:
        return 0.0
    radius = radius / max_radius

    index = np.minimum((radius * bins).astype(int), bins - 1).ravel()
    counts = np.bincount(index, minlength=bins)
    sums = np.bincount(index, weights=lum.ravel(), minlength=bins)
    valid = counts > 0
    if int(valid.sum()) < 3:
        return 0.0
    centers = (np.arange(bins) + 0.5) / bins
    profile = sums[valid] / counts[valid]
    r2 = centers[valid] ** 2

    coefficients = np.polyfit(r2, profile, 2)
    center_value = float(np.polyval(coefficients, 0.0))
    corner_value = float(np.polyval(coefficients, 1.0))
    if center_value <= 0:
        return 0.0
    return clamp((center_value - corner_value) / center_value * 100.0)
