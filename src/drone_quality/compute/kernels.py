"""可在 CPU 与 GPU 上执行的像素运算。

每个运算只调用 OpenCV 函数，因此同一函数既能处理 ``numpy.ndarray``，
也能处理 ``cv2.UMat``（由 OpenCL 执行），两条路径的结果一致。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import cv2
import numpy as np

LAPLACIAN_3X3 = np.array([[-1, -1, -1], [-1, 8, -1], [-1, -1, -1]], dtype=np.float32)


@dataclass(frozen=True, slots=True)
class Kernel:
    name: str
    fn: Callable[..., Any]
    requires_float: bool = True


def _laplacian(src: Any) -> Any:
    return cv2.filter2D(src, cv2.CV_32F, LAPLACIAN_3X3, borderType=cv2.BORDER_REPLICATE)


def _sobel(src: Any) -> Any:
    gx = cv2.Sobel(src, cv2.CV_32F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
    gy = cv2.Sobel(src, cv2.CV_32F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
    return gx, gy


def _gradient_magnitude(src: Any) -> Any:
    gx, gy = _sobel(src)
    return cv2.magnitude(gx, gy)


def _structure_tensor(src: Any, block_size: int = 5) -> Any:
    gx, gy = _sobel(src)
    window = (block_size, block_size)
    sxx = cv2.boxFilter(cv2.multiply(gx, gx), cv2.CV_32F, window, borderType=cv2.BORDER_REPLICATE)
    syy = cv2.boxFilter(cv2.multiply(gy, gy), cv2.CV_32F, window, borderType=cv2.BORDER_REPLICATE)
    sxy = cv2.boxFilter(cv2.multiply(gx, gy), cv2.CV_32F, window, borderType=cv2.BORDER_REPLICATE)
    return sxx, syy, sxy


def _laplacian_of_gaussian(src: Any, sigma: float = 2.0) -> Any:
    smoothed = cv2.GaussianBlur(src, (0, 0), sigma, borderType=cv2.BORDER_REPLICATE)
    return cv2.Laplacian(smoothed, cv2.CV_32F, ksize=3, borderType=cv2.BORDER_REPLICATE)


LAPLACIAN = Kernel("laplacian", _laplacian)
SOBEL = Kernel("sobel", _sobel)
GRADIENT_MAGNITUDE = Kernel("gradient_magnitude", _gradient_magnitude)
STRUCTURE_TENSOR = Kernel("structure_tensor", _structure_tensor)
LAPLACIAN_OF_GAUSSIAN = Kernel("laplacian_of_gaussian", _laplacian_of_gaussian)
