"""分析任务的配置模型。

所有可调参数集中在 ``AnalysisConfig`` 配置树中，选项与效果的对应关系：

- ``ProcessingConfig``：解码后的分析分辨率上限、缩略图尺寸、各格式字节上限。
- ``BlurConfig``：拉普拉斯对数缩放系数与多尺度模式。
- ``ExposureConfig``：直方图裁剪阈值、局部对比度块大小、三组权重。
- ``NoiseConfig``：噪声块大小、压缩块网格、色差/暗角检测参数。
- ``FeatureConfig``：关键点检测阈值、每种检测器与总数上限、分布网格。
- ``ComputeConfig``：GPU 最小像素阈值、上下文池大小与空闲超时、基准历史容量。
- ``ScoringConfig``：按用途区分的权重表、分级阈值、置信度调整规则。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from drone_quality.core.exceptions import ConfigurationError

WEIGHT_SUM_TOLERANCE = 1e-6
COMPONENTS = ("blur", "exposure", "noise", "technical", "descriptor")
MIB = 1024 * 1024


class UseCase(str, Enum):
    """综合评分的用途，决定使用哪张权重表。"""

    GENERAL = "general"
    PHOTOGRAMMETRIC = "photogrammetric"


class SceneType(str, Enum):
    """场景类型，用于置信度的场景修正。"""

    MIXED = "mixed"
    AERIAL_SKY = "aerial_sky"
    GROUND_DETAIL = "ground_detail"


class MultiScaleCombine(str, Enum):
    """多尺度模糊分数的合并方式。"""

    MEAN = "mean"
    MINIMUM = "min"


@dataclass(frozen=True, slots=True)
class WeightTable:
    """五个子分数的权重，总和必须为 1。"""

    blur: float
    exposure: float
    noise: float
    technical: float
    descriptor: float

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in COMPONENTS}

    def validate(self, name: str = "weights") -> None:
        values = self.as_dict()
        for component, value in values.items():
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"权重表 {name} 中 {component} 的权重非法: {value}")
        total = sum(values.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ConfigurationError(f"权重表 {name} 的权重之和必须为 1.0，当前为 {total:.6f}")


GENERAL_WEIGHTS = WeightTable(blur=0.30, exposure=0.25, noise=0.20, technical=0.10, descriptor=0.15)
PHOTOGRAMMETRIC_WEIGHTS = WeightTable(blur=0.30, exposure=0.20, noise=0.10, technical=0.0, descriptor=0.40)


def default_weight_tables() -> Dict[UseCase, WeightTable]:
    return {
        UseCase.GENERAL: GENERAL_WEIGHTS,
        UseCase.PHOTOGRAMMETRIC: PHOTOGRAMMETRIC_WEIGHTS,
    }


@dataclass(frozen=True, slots=True)
class ClassificationBands:
    """综合分数分级阈值（下界，含）。"""

    excellent: float = 85.0
    good: float = 70.0
    acceptable: float = 55.0
    poor: float = 40.0

    def validate(self) -> None:
        ordered = (self.excellent, self.good, self.acceptable, self.poor)
        if any(not 0 <= value <= 100 for value in ordered):
            raise ConfigurationError(f"分级阈值必须位于 [0, 100]: {ordered}")
        if not all(high > low for high, low in zip(ordered, ordered[1:])):
            raise ConfigurationError(f"分级阈值必须严格递减: {ordered}")


@dataclass(slots=True)
class ConfidenceRules:
    """置信度调整规则，数值为经验校准默认值。"""

    critical_weight: float = 0.2
    critical_failure_floor: float = 40.0
    excellent_downgrade_floor: float = 30.0
    excellent_downgrade_penalty: int = 20
    good_downgrade_floor: float = 20.0
    good_downgrade_penalty: int = 25
    exceptional_score: float = 90.0
    exceptional_weight: float = 0.15
    exceptional_min_count: int = 2
    exceptional_bonus: int = 10
    high_variance: float = 1000.0
    high_variance_penalty: int = 15
    low_variance: float = 200.0
    low_variance_bonus: int = 5
    aerial_exposure_ceiling: float = 60.0
    aerial_blur_floor: float = 70.0
    aerial_bonus: int = 5
    ground_descriptor_floor: float = 50.0
    ground_penalty: int = 10
    missing_component_penalty: int = 10
    min_confidence: int = 10
    max_confidence: int = 100

    def validate(self) -> None:
        if not 0 <= self.min_confidence <= self.max_confidence <= 100:
            raise ConfigurationError("置信度上下界必须满足 0 <= min <= max <= 100")
        if self.low_variance >= self.high_variance:
            raise ConfigurationError("方差阈值必须满足 low_variance < high_variance")


@dataclass(slots=True)
class ScoringConfig:
    """综合评分配置。"""

    weight_tables: Mapping[UseCase, WeightTable] = field(default_factory=default_weight_tables)
    bands: ClassificationBands = field(default_factory=ClassificationBands)
    confidence: ConfidenceRules = field(default_factory=ConfidenceRules)

    def weights_for(self, use_case: UseCase) -> WeightTable:
        try:
            table = self.weight_tables[UseCase(use_case)]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"未配置用途 {use_case!r} 的权重表") from exc
        table.validate(str(UseCase(use_case).value))
        return table

    def validate(self) -> None:
        for use_case in UseCase:
            self.weights_for(use_case)
        self.bands.validate()
        self.confidence.validate()


@dataclass(slots=True)
class ProcessingConfig:
    """解码与分析分辨率配置。"""

    max_analysis_size: int = 800
    high_quality_max_size: int = 1600
    high_quality_pixel_threshold: int = 500_000
    thumbnail_size: int = 150
    thumbnail_quality: int = 80
    min_image_edge: int = 10
    format_size_limits: Mapping[str, int] = field(
        default_factory=lambda: {
            "jpeg": 50 * MIB,
            "png": 100 * MIB,
            "tiff": 200 * MIB,
            "default": 50 * MIB,
        }
    )

    def size_limit_for(self, mime_type: Optional[str]) -> int:
        """返回 MIME 类型对应的字节上限。"""

        lowered = (mime_type or "").lower()
        if "jpeg" in lowered or "jpg" in lowered:
            key = "jpeg"
        elif "png" in lowered:
            key = "png"
        elif "tif" in lowered:
            key = "tiff"
        else:
            key = "default"
        return int(self.format_size_limits.get(key, self.format_size_limits["default"]))

    def validate(self) -> None:
        if self.min_image_edge < 3:
            raise ConfigurationError("min_image_edge 不能小于 3")
        if self.max_analysis_size < self.min_image_edge or self.high_quality_max_size < self.max_analysis_size:
            raise ConfigurationError("分析分辨率上限配置不合法")
        if self.thumbnail_size <= 0:
            raise ConfigurationError("缩略图尺寸必须大于 0")
        if "default" not in self.format_size_limits:
            raise ConfigurationError("format_size_limits 必须包含 default 项")


@dataclass(slots=True)
class BlurConfig:
    """清晰度（拉普拉斯方差）配置。"""

    normalization_factor: float = 15.0
    multi_scale: bool = False
    scale_factors: Tuple[float, ...] = (1.0, 0.5, 0.25)
    combine: MultiScaleCombine = MultiScaleCombine.MEAN

    def validate(self) -> None:
        if self.normalization_factor <= 0:
            raise ConfigurationError("normalization_factor 必须大于 0")
        if not self.scale_factors or any(not 0 < f <= 1.0 for f in self.scale_factors):
            raise ConfigurationError(f"scale_factors 必须位于 (0, 1]: {self.scale_factors}")


@dataclass(slots=True)
class ExposureConfig:
    """曝光分析配置。亮度在 0-255 直方图或 [0, 1] 浮点上按字段注明。"""

    overexposure_threshold: int = 250
    underexposure_threshold: int = 5
    tail_trim: float = 0.001
    block_size: int = 16
    highlight_threshold: float = 0.9
    highlight_clip: float = 0.98
    shadow_threshold: float = 0.1
    shadow_clip: float = 0.02
    gradient_threshold: float = 0.02
    clipping_limit: float = 5.0
    skew_threshold: float = 1.0
    high_contrast_ratio: float = 15.0
    low_contrast_ratio: float = 3.0
    optimal_dynamic_range: float = 200.0
    local_contrast_reference: float = 0.25
    region_grid: int = 4
    basic_weight: float = 0.40
    spatial_weight: float = 0.35
    perceptual_weight: float = 0.25
    local_contrast_weight: float = 0.70
    highlight_recovery_weight: float = 0.15
    shadow_detail_weight: float = 0.15

    def validate(self) -> None:
        groups = self.basic_weight + self.spatial_weight + self.perceptual_weight
        spatial = self.local_contrast_weight + self.highlight_recovery_weight + self.shadow_detail_weight
        for name, total in (("曝光分组权重", groups), ("空间指标权重", spatial)):
            if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
                raise ConfigurationError(f"{name}之和必须为 1.0，当前为 {total:.6f}")
        if self.block_size < 2:
            raise ConfigurationError("曝光 block_size 不能小于 2")
        if not 0 <= self.tail_trim < 0.5:
            raise ConfigurationError("tail_trim 必须位于 [0, 0.5)")


@dataclass(slots=True)
class NoiseConfig:
    """噪声与伪影检测配置。"""

    block_size: int = 8
    reference_sigma: float = 20.0
    compression_block_size: int = 8
    edge_threshold: float = 0.25
    max_aberration_shift: float = 2.0
    vignetting_bins: int = 16
    noise_penalty_weight: float = 0.7
    noise_penalty_cap: float = 70.0
    artifact_penalty_weight: float = 0.3
    artifact_penalty_cap: float = 30.0
    snr_bonus_cap: float = 10.0

    def validate(self) -> None:
        if self.block_size < 2 or self.compression_block_size < 2:
            raise ConfigurationError("噪声块大小不能小于 2")
        if self.reference_sigma <= 0 or self.max_aberration_shift <= 0:
            raise ConfigurationError("reference_sigma 与 max_aberration_shift 必须大于 0")
        if self.vignetting_bins < 4:
            raise ConfigurationError("vignetting_bins 不能小于 4")


@dataclass(slots=True)
class FeatureConfig:
    """特征点检测与描述子质量配置。"""

    max_dimension: int = 512
    max_keypoints: int = 2000
    max_per_detector: int = 500
    harris_k: float = 0.04
    harris_block_size: int = 5
    harris_relative_threshold: float = 0.01
    response_floor: float = 1e-6
    fast_threshold: int = 20
    edge_ratio: float = 10.0
    edge_threshold: float = 0.05
    blob_sigma: float = 2.0
    blob_threshold: float = 0.02
    nms_radius: int = 2
    duplicate_distance: float = 5.0
    grid_size: int = 8
    strength_reference: float = 1.0
    density_band: Tuple[float, float] = (0.5, 2.0)
    strength_band: Tuple[float, float] = (0.1, 0.5)
    count_reference: int = 2000
    distinctiveness_radius: int = 4

    def validate(self) -> None:
        if self.max_per_detector <= 0 or self.max_keypoints <= 0:
            raise ConfigurationError("关键点上限必须大于 0")
        if self.grid_size < 2:
            raise ConfigurationError("grid_size 不能小于 2")
        for name, (low, high) in (("density_band", self.density_band), ("strength_band", self.strength_band)):
            if not 0 <= low < high:
                raise ConfigurationError(f"{name} 必须满足 0 <= low < high")


@dataclass(slots=True)
class ComputeConfig:
    """GPU/CPU 调度配置。"""

    enable_gpu: bool = True
    min_pixels_for_gpu: int = 100_000
    pool_size: int = 3
    context_idle_timeout: float = 30.0
    reaper_interval: float = 5.0
    lease_timeout: Optional[float] = None
    benchmark_capacity: int = 100
    speedup_threshold: float = 1.5
    speedup_window: int = 10
    min_speedup_samples: int = 3
    calibration_runs: int = 3
    benchmark_interval: int = 20

    def validate(self) -> None:
        if self.pool_size <= 0:
            raise ConfigurationError("GPU 上下文池大小必须大于 0")
        if self.context_idle_timeout <= 0 or self.reaper_interval <= 0:
            raise ConfigurationError("上下文空闲超时与回收间隔必须大于 0")
        if self.benchmark_capacity <= 0 or self.speedup_window <= 0:
            raise ConfigurationError("基准历史容量与窗口必须大于 0")


@dataclass(slots=True)
class AnalysisConfig:
    """单次分析任务的配置集合。"""

    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    blur: BlurConfig = field(default_factory=BlurConfig)
    exposure: ExposureConfig = field(default_factory=ExposureConfig)
    noise: NoiseConfig = field(default_factory=NoiseConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    compute: ComputeConfig = field(default_factory=ComputeConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    use_case: UseCase = UseCase.GENERAL
    scene_type: SceneType = SceneType.MIXED
    max_workers: int = 4
    parallel_stages: bool = True
    restart_backoff: float = 0.5

    def validate(self) -> None:
        """校验整棵配置树，任何非法值立即抛出 ConfigurationError。"""

        if self.max_workers <= 0:
            raise ConfigurationError("max_workers 必须大于 0")
        if self.restart_backoff < 0:
            raise ConfigurationError("restart_backoff 不能为负数")
        try:
            UseCase(self.use_case)
            SceneType(self.scene_type)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        self.processing.validate()
        self.blur.validate()
        self.exposure.validate()
        self.noise.validate()
        self.features.validate()
        self.compute.validate()
        self.scoring.validate()
