"""核心数据模型定义。

分析记录在组装完成后不可变，各阶段只填充自己负责的字段。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np


class Recommendation(str, Enum):
    """综合评分的离散分级，按质量从高到低排列。"""

    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    POOR = "poor"
    UNSUITABLE = "unsuitable"

    @property
    def rank(self) -> int:
        return _RECOMMENDATION_ORDER.index(self)


_RECOMMENDATION_ORDER = (
    Recommendation.UNSUITABLE,
    Recommendation.POOR,
    Recommendation.ACCEPTABLE,
    Recommendation.GOOD,
    Recommendation.EXCELLENT,
)


class HistogramBalance(str, Enum):
    BALANCED = "balanced"
    UNDEREXPOSED = "underexposed"
    OVEREXPOSED = "overexposed"
    HIGH_CONTRAST = "high-contrast"
    LOW_CONTRAST = "low-contrast"


@dataclass(slots=True)
class SourceImage:
    """待分析的源图片：原始字节与声明的 MIME 类型。"""

    name: str
    data: bytes
    mime_type: str
    path: Optional[Path] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class DecodedImage:
    """解码后的 RGBA 像素及其原始尺寸。"""

    pixels: np.ndarray
    original_size: Tuple[int, int]
    thumbnail: str
    format: Optional[str] = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(frozen=True, slots=True)
class ColorBalance:
    """YCrCb 空间的通道均值。"""

    luminance: float
    red_chroma: float
    blue_chroma: float


@dataclass(frozen=True, slots=True)
class ExposureAnalysis:
    over_exposure_percent: float
    under_exposure_percent: float
    dynamic_range: float
    average_brightness: float
    contrast_ratio: float
    histogram_skewness: float
    histogram_balance: HistogramBalance
    local_contrast: float
    highlight_recovery: float
    shadow_detail: float
    color_balance: ColorBalance
    perceptual_exposure_score: float
    spatial_exposure_variance: float
    exposure_score: int


@dataclass(frozen=True, slots=True)
class NoiseAnalysis:
    raw_standard_deviation: float
    noise_level: float
    snr_ratio: float
    compression_artifacts: float
    chromatic_aberration: float
    vignetting: float
    overall_artifact_score: float
    noise_score: int


@dataclass(frozen=True, slots=True)
class KeypointDistribution:
    uniformity: float
    coverage: float
    clustering: float


@dataclass(frozen=True, slots=True)
class FeatureStrength:
    average: float
    median: float
    std_dev: float


@dataclass(frozen=True, slots=True)
class DescriptorQuality:
    distinctiveness: float
    repeatability: float
    matchability: float


@dataclass(frozen=True, slots=True)
class FeatureTypes:
    corners: int = 0
    edges: int = 0
    blobs: int = 0
    textured: int = 0


@dataclass(frozen=True, slots=True)
class DescriptorAnalysis:
    keypoint_count: int
    keypoint_density: float
    distribution: KeypointDistribution
    strength: FeatureStrength
    quality: DescriptorQuality
    feature_types: FeatureTypes
    scale_invariance: float
    rotation_invariance: float
    descriptor_score: int
    photogrammetric_score: Optional[int] = None
    reconstruction_suitability: Optional[Recommendation] = None
    descriptor_type: str = "harris-fast-edge-blob"


@dataclass(frozen=True, slots=True)
class CameraMetadata:
    """相机 EXIF 信息，缺失字段保持为 None。"""

    make: Optional[str] = None
    model: Optional[str] = None
    lens_model: Optional[str] = None
    iso: Optional[int] = None
    aperture: Optional[float] = None
    shutter_speed: Optional[float] = None
    focal_length: Optional[float] = None
    white_balance: Optional[str] = None
    metering_mode: Optional[str] = None
    orientation: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: Optional[str] = None
    timestamp_utc: Optional[str] = None
    color_space: Optional[str] = None
    file_format: Optional[str] = None
    compression: Optional[str] = None
    bit_depth: Optional[int] = None

    @property
    def has_camera(self) -> bool:
        return bool(self.make and self.model)

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True, slots=True)
class CompositeQualityScore:
    blur: float
    exposure: float
    noise: float
    technical: float
    descriptor: float
    overall: int
    recommendation: Recommendation
    confidence: int
    reasoning: Tuple[str, ...]
    base_recommendation: Recommendation
    use_case: str
    scene_type: str
    weights: Dict[str, float] = field(default_factory=dict)
    missing: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ImageAnalysis:
    """单张图片的完整分析结果。"""

    id: str
    name: str
    size: int
    thumbnail: Optional[str] = None
    source: Optional[Path] = None
    blur_score: Optional[int] = None
    exposure_analysis: Optional[ExposureAnalysis] = None
    noise_analysis: Optional[NoiseAnalysis] = None
    descriptor_analysis: Optional[DescriptorAnalysis] = None
    metadata: Optional[CameraMetadata] = None
    composite_score: Optional[CompositeQualityScore] = None
    processing_duration: float = 0.0
    error: Optional[str] = None
    warnings: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_snapshot(self) -> Dict[str, Any]:
        """返回可序列化的精简字典，不含缩略图等大字段。"""

        snapshot: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "size": self.size,
            "source": str(self.source) if self.source else None,
            "blur_score": self.blur_score,
            "processing_duration": round(self.processing_duration, 1),
            "error": self.error,
            "warnings": list(self.warnings),
        }
        for key in ("exposure_analysis", "noise_analysis", "descriptor_analysis", "metadata"):
            value = getattr(self, key)
            snapshot[key] = _plain(asdict(value)) if value is not None else None
        score = self.composite_score
        snapshot["composite_score"] = _plain(asdict(score)) if score is not None else None
        return snapshot


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


@dataclass(slots=True)
class BatchResult:
    """批处理的产出，按提交顺序排列。"""

    analyses: list[ImageAnalysis]

    @property
    def succeeded(self) -> list[ImageAnalysis]:
        return [item for item in self.analyses if item.ok]

    @property
    def failed(self) -> list[ImageAnalysis]:
        return [item for item in self.analyses if not item.ok]
