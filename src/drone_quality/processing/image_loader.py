"""图片解码与基础预处理实现。"""

from __future__ import annotations

import base64
import io
import logging
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from drone_quality.core.config import ProcessingConfig
from drone_quality.core.exceptions import DecodeError
from drone_quality.core.models import DecodedImage

LOGGER = logging.getLogger(__name__)


def decode_image(
    data: bytes,
    mime_type: Optional[str],
    config: Optional[ProcessingConfig] = None,
    gpu_available: bool = False,
) -> DecodedImage:
    """解码图片字节为 RGBA 像素数组并生成缩略图。

    像素数组已执行 EXIF 旋转，并按分析分辨率上限等比缩小。
    无法解码、超出格式字节上限或任一边小于下限时抛出 DecodeError。
    """

    config = config or ProcessingConfig()
    limit = config.size_limit_for(mime_type)
    if len(data) > limit:
        raise DecodeError(f"文件大小 {len(data)} 字节超过 {mime_type or '未知格式'} 的上限 {limit} 字节")
    if not data:
        raise DecodeError("图像数据为空")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            image_format = img.format
            # EXIF Orientation 校正
            img = ImageOps.exif_transpose(img)
            rgba = _convert_to_rgba(img)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        LOGGER.debug("无法识别图像数据 (%s): %s", mime_type, exc)
        raise DecodeError(f"无法解码图像: {exc}") from exc

    width, height = rgba.size
    if min(width, height) < config.min_image_edge:
        raise DecodeError(f"图像尺寸过小: {width}x{height}")

    max_size = analysis_size_limit(width, height, config, gpu_available)
    target = analysis_dimensions(width, height, max_size, config.min_image_edge)
    try:
        analysis_image = rgba if target == (width, height) else rgba.resize(target, Image.LANCZOS)
        thumbnail = make_thumbnail(rgba, config.thumbnail_size, config.thumbnail_quality)
    except (OSError, ValueError) as exc:
        raise DecodeError(f"无法缩放图像 {width}x{height}: {exc}") from exc

    pixels = np.asarray(analysis_image, dtype=np.uint8).copy()
    return DecodedImage(pixels=pixels, original_size=(width, height), thumbnail=thumbnail, format=image_format)


def analysis_dimensions(width: int, height: int, max_size: int, min_edge: int) -> Tuple[int, int]:
    """等比缩小到长边不超过 max_size，短边不低于 min_edge。"""

    if max(width, height) <= max_size:
        return width, height
    scale = max_size / max(width, height)
    floor = max(1, min_edge)
    return (
        min(width, max(floor, int(round(width * scale)))),
        min(height, max(floor, int(round(height * scale)))),
    )


def analysis_size_limit(width: int, height: int, config: ProcessingConfig, gpu_available: bool) -> int:
    """GPU 可用且原图较大时允许更高的分析分辨率。"""

    if gpu_available and width * height > config.high_quality_pixel_threshold:
        return config.high_quality_max_size
    return config.max_analysis_size


def make_thumbnail(img: Image.Image, size: int, quality: int = 80) -> str:
    """生成 JPEG 缩略图并编码为 data URI。"""

    thumb = img.resize(analysis_dimensions(img.width, img.height, size, 1), Image.LANCZOS)
    background = Image.new("RGB", thumb.size, (255, 255, 255))
    background.paste(thumb, mask=thumb.split()[-1])
    buffer = io.BytesIO()
    background.save(buffer, format="JPEG", quality=quality)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


def _convert_to_rgba(img: Image.Image) -> Image.Image:
    """将任意模式图像转换为 RGBA。"""

    if img.mode == "RGBA":
        return img.copy()

    if img.mode in {"I;16", "I;16B", "I;16L", "I"}:
        # 16 位灰度先压缩到 8 位
        array = np.asarray(img, dtype=np.float64)
        peak = array.max() or 1.0
        scaled = (array / peak * 255.0).clip(0, 255).astype(np.uint8)
        return Image.fromarray(scaled).convert("RGBA")

    if img.mode == "CMYK":
        return img.convert("RGB").convert("RGBA")

    return img.convert("RGBA")
