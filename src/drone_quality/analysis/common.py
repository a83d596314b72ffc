"""各分析器共用的像素工具函数。"""

from __future__ import annotations

import numpy as np

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def luminance(pixels: np.ndarray) -> np.ndarray:
    """RGB(A) 像素转亮度，返回 0-255 的 float64 数组。"""

    if pixels.ndim == 2:
        return pixels.astype(np.float64)
    rgb = pixels[..., :3].astype(np.float64)
    return rgb @ LUMA_WEIGHTS


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    if not np.isfinite(value):
        return low
    return float(min(max(value, low), high))


def block_stds(values: np.ndarray, block: int) -> np.ndarray:
    """不重叠分块的标准差；图像小于一个块时退化为整体标准差。"""

    height, width = values.shape[:2]
    rows, cols = height // block, width // block
    if rows == 0 or cols == 0:
        return np.array([float(values.std())])
    cropped = values[: rows * block, : cols * block].reshape(rows, block, cols, block)
    return cropped.std(axis=(1, 3)).ravel()


def band_score(value: float, low: float, high: float) -> float:
    """数值落在参考区间内得 100 分，区间外按距离线性扣分。"""

    if low <= value <= high:
        return 100.0
    if value < low:
        return clamp(value / low * 100.0) if low > 0 else 0.0
    return clamp(100.0 - (value - high) / high * 50.0)
