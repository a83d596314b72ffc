"""清晰度分析：拉普拉斯响应方差。"""

from __future__ import annotations

import logging
import math
from typing import Optional

import cv2
import numpy as np

from drone_quality.analysis.common import clamp, luminance
from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.compute.kernels import LAPLACIAN
from drone_quality.core.config import BlurConfig, MultiScaleCombine

LOGGER = logging.getLogger(__name__)

MIN_SCALED_EDGE = 3


def laplacian_variance(lum: np.ndarray, dispatcher: ComputeDispatcher) -> float:
    """内部像素的拉普拉斯绝对响应的总体方差。"""

    response = dispatcher.run(LAPLACIAN, lum)
    interior = np.abs(response[1:-1, 1:-1].astype(np.float64))
    if interior.size == 0:
        return 0.0
    return float(interior.var())


def score_from_variance(variance: float, normalization_factor: float = 15.0) -> float:
    return clamp(math.log(variance + 1.0) * normalization_factor)


def analyze_blur(
    pixels: np.ndarray,
    dispatcher: ComputeDispatcher,
    config: Optional[BlurConfig] = None,
) -> int:
    """返回 0-100 的清晰度分数，越高越清晰。"""

    config = config or BlurConfig()
    lum = luminance(pixels)
    if not config.multi_scale:
        return int(round(score_from_variance(laplacian_variance(lum, dispatcher), config.normalization_factor)))

    height, width = lum.shape
    scores: list[float] = []
    for factor in config.scale_factors:
        if factor >= 1.0:
            scaled = lum
        else:
            size = (int(round(width * factor)), int(round(height * factor)))
            if min(size) < MIN_SCALED_EDGE:
                LOGGER.debug("跳过尺度 %.2f，缩放后尺寸过小", factor)
                continue
            scaled = cv2.resize(lum, size, interpolation=cv2.INTER_AREA)
        scores.append(score_from_variance(laplacian_variance(scaled, dispatcher), config.normalization_factor))

    if not scores:
        return 0
    combined = min(scores) if config.combine == MultiScaleCombine.MINIMUM else sum(scores) / len(scores)
    return int(round(clamp(combined)))
