"""特征点检测与描述子质量评估。

在缩小后的灰度图上运行四种检测器（harris、fast、edge、blob），每种最多保留
``max_per_detector`` 个点，合并后按强度去重并截断到 ``max_keypoints``。
所有统计量都只由检测到的关键点计算，单图分析不做跨图匹配。
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from drone_quality.analysis.common import band_score, clamp, luminance
from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.compute.kernels import LAPLACIAN_OF_GAUSSIAN, STRUCTURE_TENSOR
from drone_quality.core.config import FeatureConfig
from drone_quality.core.models import (
    DescriptorAnalysis,
    DescriptorQuality,
    FeatureStrength,
    FeatureTypes,
    KeypointDistribution,
)

LOGGER = logging.getLogger(__name__)

# 单位阶跃边缘上 3x3 Sobel 的响应幅值
SOBEL_UNIT_RESPONSE = 4.0
CORNER_RATIO = 3.0
BORDER = 3
SCALE_SIGMAS = (1.0, 2.0, 4.0)
NN_CHUNK = 512


@dataclass(slots=True)
class Keypoint:
    x: float
    y: float
    response: float
    detector: str
    strength: float = 0.0
    kind: str = "textured"


@dataclass(slots=True)
class _Tensor:
    sxx: np.ndarray
    syy: np.ndarray
    sxy: np.ndarray
    lambda1: np.ndarray
    lambda2: np.ndarray


def analyze_features(
    pixels: np.ndarray,
    dispatcher: ComputeDispatcher,
    config: Optional[FeatureConfig] = None,
) -> DescriptorAnalysis:
    """检测关键点并返回描述子质量分析，descriptor_score 只反映特征本身。"""

    config = config or FeatureConfig()
    work = working_image(luminance(pixels) / 255.0, config.max_dimension)
    tensor = _structure_tensor(work, dispatcher, config)

    candidates: List[Keypoint] = []
    candidates += detect_harris(tensor, config)
    candidates += detect_fast(work, config)
    candidates += detect_edges(tensor, config)
    log_responses = {sigma: _normalized_log(work, dispatcher, sigma) for sigma in SCALE_SIGMAS}
    blob_response = log_responses.get(config.blob_sigma)
    if blob_response is None:
        blob_response = _normalized_log(work, dispatcher, config.blob_sigma)
    candidates += detect_blobs(blob_response, config)

    _annotate(candidates, tensor, config)
    keypoints = deduplicate(candidates, config.duplicate_distance)[: config.max_keypoints]
    LOGGER.debug("候选关键点 %d 个，去重后保留 %d 个", len(candidates), len(keypoints))

    height, width = work.shape
    pixel_count = height * width
    if not keypoints:
        return _empty_analysis()

    density = len(keypoints) / (pixel_count / 1000.0)
    distribution = keypoint_distribution(keypoints, width, height, config.grid_size)
    strengths = np.array([kp.strength for kp in keypoints], dtype=np.float64)
    strength = FeatureStrength(
        average=round(float(strengths.mean()), 4),
        median=round(float(np.median(strengths)), 4),
        std_dev=round(float(strengths.std()), 4),
    )

    distinctiveness = _distinctiveness(work, keypoints, config.distinctiveness_radius)
    repeatability = _repeatability(strengths)
    density_score = band_score(density, *config.density_band)
    strength_score = band_score(strength.average, *config.strength_band)
    matchability = clamp(0.4 * density_score + 0.4 * strength_score + 0.2 * distribution.coverage)
    quality = DescriptorQuality(
        distinctiveness=round(distinctiveness, 2),
        repeatability=round(repeatability, 2),
        matchability=round(matchability, 2),
    )

    distribution_score = (distribution.uniformity + distribution.coverage + (100.0 - distribution.clustering)) / 3.0
    quality_score = (distinctiveness + repeatability + matchability) / 3.0
    score = 0.20 * density_score + 0.25 * distribution_score + 0.20 * strength_score + 0.35 * quality_score

    return DescriptorAnalysis(
        keypoint_count=len(keypoints),
        keypoint_density=round(density, 4),
        distribution=distribution,
        strength=strength,
        quality=quality,
        feature_types=_count_types(keypoints),
        scale_invariance=round(_scale_invariance(keypoints, log_responses), 2),
        rotation_invariance=round(_rotation_invariance(keypoints, tensor), 2),
        descriptor_score=int(round(clamp(score))),
    )


def working_image(lum: np.ndarray, max_dimension: int) -> np.ndarray:
    height, width = lum.shape
    longest = max(height, width)
    if longest <= max_dimension:
        return lum.astype(np.float32)
    factor = max_dimension / longest
    size = (max(1, int(round(width * factor))), max(1, int(round(height * factor))))
    return cv2.resize(lum.astype(np.float32), size, interpolation=cv2.INTER_AREA)


def detect_harris(tensor: _Tensor, config: FeatureConfig) -> List[Keypoint]:
    trace = tensor.sxx + tensor.syy
    response = tensor.sxx * tensor.syy - tensor.sxy**2 - config.harris_k * trace**2
    peak = float(response.max()) if response.size else 0.0
    threshold = max(peak * config.harris_relative_threshold, config.response_floor)
    return _local_maxima(response, threshold, config.nms_radius, "harris", config.max_per_detector)


def detect_fast(work: np.ndarray, config: FeatureConfig) -> List[Keypoint]:
    image = np.clip(work * 255.0, 0, 255).astype(np.uint8)
    detector = cv2.FastFeatureDetector_create(threshold=config.fast_threshold, nonmaxSuppression=True)
    found = sorted(detector.detect(image, None), key=lambda kp: kp.response, reverse=True)
    return [
        Keypoint(x=float(kp.pt[0]), y=float(kp.pt[1]), response=float(kp.response), detector="fast")
        for kp in found[: config.max_per_detector]
    ]


def detect_edges(tensor: _Tensor, config: FeatureConfig) -> List[Keypoint]:
    lambda1, lambda2 = tensor.lambda1, tensor.lambda2
    elongated = lambda1 > config.edge_ratio * lambda2
    response = np.where(elongated, lambda1, 0.0)
    return _local_maxima(response, config.edge_threshold, config.nms_radius, "edge", config.max_per_detector)


def detect_blobs(log_response: np.ndarray, config: FeatureConfig) -> List[Keypoint]:
    return _local_maxima(log_response, config.blob_threshold, config.nms_radius, "blob", config.max_per_detector)


def deduplicate(keypoints: Iterable[Keypoint], min_distance: float) -> List[Keypoint]:
    """按强度从高到低贪心保留，与已保留点距离小于 min_distance 的点被丢弃。"""

    ordered = sorted(keypoints, key=lambda kp: (kp.strength, kp.response), reverse=True)
    if min_distance <= 0:
        return ordered
    cell = min_distance
    grid: dict[Tuple[int, int], List[Keypoint]] = {}
    kept: List[Keypoint] = []
    limit = min_distance**2
    for kp in ordered:
        gx, gy = int(kp.x // cell), int(kp.y // cell)
        neighbours = (
            other
            for dx in (-1, 0, 1)
            for dy in (-1, 0, 1)
            for other in grid.get((gx + dx, gy + dy), ())
        )
        if any((other.x - kp.x) ** 2 + (other.y - kp.y) ** 2 < limit for other in neighbours):
            continue
        kept.append(kp)
        grid.setdefault((gx, gy), []).append(kp)
    return kept


def keypoint_distribution(keypoints: Sequence[Keypoint], width: int, height: int, grid_size: int) -> KeypointDistribution:
    xs = np.array([kp.x for kp in keypoints], dtype=np.float64)
    ys = np.array([kp.y for kp in keypoints], dtype=np.float64)
    cols = np.minimum((xs / width * grid_size).astype(int), grid_size - 1)
    rows = np.minimum((ys / height * grid_size).astype(int), grid_size - 1)
    counts = np.bincount(rows * grid_size + cols, minlength=grid_size * grid_size).astype(np.float64)

    coverage = float((counts > 0).mean()) * 100.0
    mean = float(counts.mean())
    variation = float(counts.std()) / mean if mean > 0 else 0.0
    uniformity = max(0.0, 100.0 - variation * 50.0)
    clustering = _clustering(xs, ys, width * height)
    return KeypointDistribution(
        uniformity=round(uniformity, 2),
        coverage=round(coverage, 2),
        clustering=round(clustering, 2),
    )


def _clustering(xs: np.ndarray, ys: np.ndarray, area: float) -> float:
    """平均最近邻距离与随机分布期望的比值，越聚集分数越高。"""

    count = len(xs)
    if count < 2:
        return 100.0
    points = np.stack([xs, ys], axis=1).astype(np.float32)
    nearest = np.empty(count, dtype=np.float64)
    for start in range(0, count, NN_CHUNK):
        chunk = points[start : start + NN_CHUNK]
        distances = ((chunk[:, None, :] - points[None, :, :]) ** 2).sum(axis=2)
        distances[np.arange(len(chunk)), np.arange(start, start + len(chunk))] = np.inf
        nearest[start : start + len(chunk)] = np.sqrt(distances.min(axis=1))
    expected = math.sqrt(area / count) / 2.0
    if expected <= 0:
        return 100.0
    return max(0.0, 100.0 - float(nearest.mean()) / expected * 100.0)


def _structure_tensor(work: np.ndarray, dispatcher: ComputeDispatcher, config: FeatureConfig) -> _Tensor:
    sxx, syy, sxy = (
        np.asarray(item, dtype=np.float64)
        for item in dispatcher.run(STRUCTURE_TENSOR, work, block_size=config.harris_block_size)
    )
    half_trace = (sxx + syy) / 2.0
    spread = np.sqrt(np.maximum(((sxx - syy) / 2.0) ** 2 + sxy**2, 0.0))
    return _Tensor(
        sxx=sxx,
        syy=syy,
        sxy=sxy,
        lambda1=np.maximum(half_trace + spread, 0.0),
        lambda2=np.maximum(half_trace - spread, 0.0),
    )


def _normalized_log(work: np.ndarray, dispatcher: ComputeDispatcher, sigma: float) -> np.ndarray:
    return np.abs(dispatcher.run(LAPLACIAN_OF_GAUSSIAN, work, sigma=sigma)) * sigma**2


def _local_maxima(response: np.ndarray, threshold: float, radius: int, detector: str, limit: int) -> List[Keypoint]:
    if response.size == 0:
        return []
    values = response.astype(np.float32)
    kernel = np.ones((2 * radius + 1, 2 * radius + 1), dtype=np.uint8)
    dilated = cv2.dilate(values, kernel)
    mask = (values >= dilated) & (values > threshold)
    mask[:BORDER, :] = False
    mask[-BORDER:, :] = False
    mask[:, :BORDER] = False
    mask[:, -BORDER:] = False
    ys, xs = np.nonzero(mask)
    if len(xs) == 0:
        return []
    order = np.argsort(values[ys, xs])[::-1][:limit]
    return [
        Keypoint(x=float(xs[i]), y=float(ys[i]), response=float(values[ys[i], xs[i]]), detector=detector)
        for i in order
    ]


def _annotate(keypoints: Iterable[Keypoint], tensor: _Tensor, config: FeatureConfig) -> None:
    height, width = tensor.lambda1.shape
    for kp in keypoints:
        row = min(max(int(round(kp.y)), 0), height - 1)
        col = min(max(int(round(kp.x)), 0), width - 1)
        lambda1 = float(tensor.lambda1[row, col])
        lambda2 = float(tensor.lambda2[row, col])
        kp.strength = min(math.sqrt(lambda1 + lambda2) / SOBEL_UNIT_RESPONSE / config.strength_reference, 1.0)
        kp.kind = _classify(kp.detector, lambda1, lambda2, config.edge_ratio)


def _classify(detector: str, lambda1: float, lambda2: float, edge_ratio: float) -> str:
    if detector == "blob":
        return "blob"
    if detector == "edge":
        return "edge"
    if lambda1 <= 0:
        return "textured"
    ratio = lambda1 / max(lambda2, 1e-12)
    if ratio < CORNER_RATIO:
        return "corner"
    if ratio >= edge_ratio:
        return "edge"
    return "textured"


def _count_types(keypoints: Sequence[Keypoint]) -> FeatureTypes:
    kinds = [kp.kind for kp in keypoints]
    return FeatureTypes(
        corners=kinds.count("corner"),
        edges=kinds.count("edge"),
        blobs=kinds.count("blob"),
        textured=kinds.count("textured"),
    )


def _distinctiveness(work: np.ndarray, keypoints: Sequence[Keypoint], radius: int) -> float:
    """关键点邻域 (2r+1)² 像素与其均值的平均绝对差。"""

    height, width = work.shape
    deviations: list[float] = []
    for kp in keypoints:
        row, col = int(round(kp.y)), int(round(kp.x))
        patch = work[max(row - radius, 0) : row + radius + 1, max(col - radius, 0) : col + radius + 1]
        if patch.size:
            deviations.append(float(np.abs(patch - patch.mean()).mean()))
    if not deviations:
        return 0.0
    return clamp(float(np.mean(deviations)) / 0.25 * 100.0)


def _repeatability(strengths: np.ndarray) -> float:
    mean = float(strengths.mean())
    if mean <= 0:
        return 0.0
    return clamp(100.0 - float(strengths.std()) / mean * 100.0)


def _scale_invariance(keypoints: Sequence[Keypoint], log_responses: dict[float, np.ndarray]) -> float:
    """各关键点特征尺度（归一化 LoG 响应最大的 σ）分布的熵。"""

    stack = np.stack([log_responses[sigma] for sigma in SCALE_SIGMAS])
    height, width = stack.shape[1:]
    levels = []
    for kp in keypoints:
        row = min(max(int(round(kp.y)), 0), height - 1)
        col = min(max(int(round(kp.x)), 0), width - 1)
        levels.append(int(np.argmax(stack[:, row, col])))
    counts = np.bincount(levels, minlength=len(SCALE_SIGMAS)).astype(np.float64)
    probabilities = counts[counts > 0] / counts.sum()
    entropy = float(-(probabilities * np.log(probabilities)).sum())
    return clamp(entropy / math.log(len(SCALE_SIGMAS)) * 100.0)


def _rotation_invariance(keypoints: Sequence[Keypoint], tensor: _Tensor) -> float:
    """主方向越分散越好：(1 - 平均合成向量长度) × 100。方向为轴向，按倍角计算。"""

    height, width = tensor.sxx.shape
    angles = []
    for kp in keypoints:
        row = min(max(int(round(kp.y)), 0), height - 1)
        col = min(max(int(round(kp.x)), 0), width - 1)
        angles.append(math.atan2(2.0 * tensor.sxy[row, col], tensor.sxx[row, col] - tensor.syy[row, col]))
    doubled = np.array(angles, dtype=np.float64)
    resultant = math.hypot(float(np.cos(doubled).mean()), float(np.sin(doubled).mean()))
    return clamp((1.0 - resultant) * 100.0)


def _empty_analysis() -> DescriptorAnalysis:
    return DescriptorAnalysis(
        keypoint_count=0,
        keypoint_density=0.0,
        distribution=KeypointDistribution(uniformity=0.0, coverage=0.0, clustering=100.0),
        strength=FeatureStrength(average=0.0, median=0.0, std_dev=0.0),
        quality=DescriptorQuality(distinctiveness=0.0, repeatability=0.0, matchability=0.0),
        feature_types=FeatureTypes(),
        scale_invariance=0.0,
        rotation_invariance=0.0,
        descriptor_score=0,
    )
