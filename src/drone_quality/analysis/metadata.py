"""相机元数据读取与技术分数。

EXIF 读取失败不影响分析流程：记录警告并返回只含文件格式的元数据。
"""

from __future__ import annotations

import io
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from PIL import Image, UnidentifiedImageError

from drone_quality.core.models import CameraMetadata

LOGGER = logging.getLogger(__name__)

EXIF_IFD = 0x8769
GPS_IFD = 0x8825

TAG_MAKE = 271
TAG_MODEL = 272
TAG_ORIENTATION = 274
TAG_DATETIME = 306
TAG_EXPOSURE_TIME = 33434
TAG_F_NUMBER = 33437
TAG_ISO = 34855
TAG_DATETIME_ORIGINAL = 36867
TAG_OFFSET_TIME_ORIGINAL = 36881
TAG_METERING_MODE = 37383
TAG_FOCAL_LENGTH = 37386
TAG_COLOR_SPACE = 40961
TAG_WHITE_BALANCE = 41987
TAG_LENS_MODEL = 42036

GPS_LATITUDE_REF = 1
GPS_LATITUDE = 2
GPS_LONGITUDE_REF = 3
GPS_LONGITUDE = 4
GPS_ALTITUDE_REF = 5
GPS_ALTITUDE = 6

METERING_MODES = {
    0: "unknown",
    1: "average",
    2: "center-weighted",
    3: "spot",
    4: "multi-spot",
    5: "pattern",
    6: "partial",
}
WHITE_BALANCE = {0: "auto", 1: "manual"}
COLOR_SPACES = {1: "sRGB", 2: "Adobe RGB", 65535: "uncalibrated"}

FORMAT_SCORES = {"TIFF": 10, "PNG": 5, "JPEG": 0}


def extract_metadata(data: bytes) -> CameraMetadata:
    """从图像字节读取 EXIF；任何读取错误都降级为空元数据。"""

    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format
            bit_depth = _bit_depth(img.mode)
            compression = img.info.get("compression")
            exif = img.getexif()
            base = dict(exif.items())
            details = dict(exif.get_ifd(EXIF_IFD).items())
            gps = dict(exif.get_ifd(GPS_IFD).items())
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        LOGGER.warning("读取 EXIF 失败，使用空元数据: %s", exc)
        return CameraMetadata()

    try:
        return _build_metadata(base, details, gps, image_format, compression, bit_depth)
    except (TypeError, ValueError, ZeroDivisionError) as exc:
        LOGGER.warning("解析 EXIF 字段失败，仅保留文件格式: %s", exc)
        return CameraMetadata(file_format=image_format, compression=_text(compression), bit_depth=bit_depth)


def technical_score(metadata: Optional[CameraMetadata]) -> int:
    """根据元数据完整度、ISO 与文件格式给出 0-100 的技术分数。"""

    if metadata is None:
        return 50

    score = 50
    if metadata.has_camera:
        score += 10
    if metadata.iso is not None and metadata.aperture is not None:
        score += 10
    if metadata.has_location:
        score += 5
    if metadata.timestamp:
        score += 5

    iso = metadata.iso
    if iso is not None:
        if iso <= 400:
            score += 10
        elif iso <= 800:
            score += 5
        elif iso > 1600:
            score -= 5

    if metadata.file_format:
        score += FORMAT_SCORES.get(metadata.file_format.upper(), -5)

    return max(0, min(100, score))


def _build_metadata(
    base: Mapping[int, Any],
    details: Mapping[int, Any],
    gps: Mapping[int, Any],
    image_format: Optional[str],
    compression: Any,
    bit_depth: Optional[int],
) -> CameraMetadata:
    timestamp = _text(details.get(TAG_DATETIME_ORIGINAL) or base.get(TAG_DATETIME))
    return CameraMetadata(
        make=_text(base.get(TAG_MAKE)),
        model=_text(base.get(TAG_MODEL)),
        lens_model=_text(details.get(TAG_LENS_MODEL)),
        iso=_integer(details.get(TAG_ISO)),
        aperture=_number(details.get(TAG_F_NUMBER)),
        shutter_speed=_number(details.get(TAG_EXPOSURE_TIME)),
        focal_length=_number(details.get(TAG_FOCAL_LENGTH)),
        white_balance=WHITE_BALANCE.get(_integer(details.get(TAG_WHITE_BALANCE))),
        metering_mode=METERING_MODES.get(_integer(details.get(TAG_METERING_MODE))),
        orientation=_integer(base.get(TAG_ORIENTATION)),
        latitude=_coordinate(gps.get(GPS_LATITUDE), gps.get(GPS_LATITUDE_REF), "S"),
        longitude=_coordinate(gps.get(GPS_LONGITUDE), gps.get(GPS_LONGITUDE_REF), "W"),
        altitude=_altitude(gps.get(GPS_ALTITUDE), gps.get(GPS_ALTITUDE_REF)),
        timestamp=timestamp,
        timestamp_utc=_to_utc(timestamp, _text(details.get(TAG_OFFSET_TIME_ORIGINAL))),
        color_space=COLOR_SPACES.get(_integer(details.get(TAG_COLOR_SPACE))),
        file_format=image_format,
        compression=_text(compression),
        bit_depth=bit_depth,
    )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    text = str(value).strip("\x00 ").strip()
    return text or None


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, tuple) and len(value) == 2:
        numerator, denominator = value
        return float(numerator) / float(denominator) if denominator else None
    return float(value)


def _integer(value: Any) -> Optional[int]:
    if isinstance(value, (tuple, list)):
        value = value[0] if value else None
    number = _number(value)
    return int(number) if number is not None else None


def _coordinate(value: Any, reference: Any, negative_ref: str) -> Optional[float]:
    if not value or len(value) != 3:
        return None
    degrees, minutes, seconds = (_number(part) or 0.0 for part in value)
    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if _text(reference) == negative_ref:
        decimal = -decimal
    return round(decimal, 7)


def _altitude(value: Any, reference: Any) -> Optional[float]:
    altitude = _number(value)
    if altitude is None:
        return None
    below_sea_level = reference in (1, b"\x01")
    return -altitude if below_sea_level else altitude


def _to_utc(timestamp: Optional[str], offset: Optional[str]) -> Optional[str]:
    if not timestamp:
        return None
    try:
        local = datetime.strptime(timestamp, "%Y:%m:%d %H:%M:%S")
    except ValueError:
        return None
    if not offset:
        return None
    try:
        sign = -1 if offset.startswith("-") else 1
        hours, minutes = offset.lstrip("+-").split(":")
        delta = timedelta(hours=int(hours), minutes=int(minutes)) * sign
    except ValueError:
        return None
    aware = local.replace(tzinfo=timezone(delta))
    return aware.astimezone(timezone.utc).isoformat()


def _bit_depth(mode: str) -> Optional[int]:
    if mode in {"1"}:
        return 1
    if mode in {"L", "P", "RGB", "RGBA", "CMYK", "YCbCr", "LAB", "LA"}:
        return 8
    if mode.startswith("I;16"):
        return 16
    if mode in {"I", "F"}:
        return 32
    return None
