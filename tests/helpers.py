"""测试用的合成图像工具。"""

from __future__ import annotations

import io

import numpy as np
from PIL import Image


def gray_to_rgba(gray: np.ndarray) -> np.ndarray:
    gray = np.clip(gray, 0, 255).astype(np.uint8)
    alpha = np.full_like(gray, 255)
    return np.dstack([gray, gray, gray, alpha])


def checkerboard(size: int = 256, square: int = 4) -> np.ndarray:
    yy, xx = np.indices((size, size))
    return (((yy // square) + (xx // square)) % 2 * 255).astype(np.uint8)


def encode_png(gray: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(np.clip(gray, 0, 255).astype(np.uint8)).convert("RGB").save(buffer, format="PNG")
    return buffer.getvalue()
