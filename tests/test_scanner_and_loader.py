"""文件扫描、图片解码与 EXIF 读取测试。"""

from __future__ import annotations

import io
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from drone_quality.analysis.metadata import extract_metadata, technical_score
from drone_quality.core.config import ProcessingConfig
from drone_quality.core.exceptions import DecodeError
from drone_quality.core.models import CameraMetadata
from drone_quality.core.scanner import collect_image_paths, load_source_images
from drone_quality.processing.image_loader import decode_image


def _encode(image: Image.Image, fmt: str = "PNG", **params) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


def test_scanner_collects_images_and_skips_other_files(tmp_path: Path) -> None:
    source = tmp_path / "input"
    nested = source / "flight_02"
    nested.mkdir(parents=True)
    Image.new("RGB", (32, 32), "blue").save(source / "a.png")
    Image.new("RGB", (32, 32), "red").save(nested / "b.jpg")
    (source / "notes.txt").write_text("hello")

    flat = collect_image_paths([source], recursive=False)
    recursive = collect_image_paths([source], recursive=True)
    images = load_source_images(recursive)

    assert [path.name for path in flat] == ["a.png"]
    assert sorted(path.name for path in recursive) == ["a.png", "b.jpg"]
    assert {image.mime_type for image in images} == {"image/png", "image/jpeg"}
    assert all(image.size > 0 for image in images)


def test_decode_downsamples_and_builds_thumbnail() -> None:
    data = _encode(Image.new("RGB", (2000, 1000), "green"))

    decoded = decode_image(data, "image/png")

    assert decoded.pixels.shape == (400, 800, 4)
    assert decoded.pixels.dtype == np.uint8
    assert decoded.original_size == (2000, 1000)
    assert decoded.thumbnail.startswith("data:image/jpeg;base64,")


def test_decode_allows_larger_analysis_size_with_gpu() -> None:
    data = _encode(Image.new("RGB", (2000, 1000), "green"))

    decoded = decode_image(data, "image/png", gpu_available=True)

    assert decoded.pixels.shape == (800, 1600, 4)


def test_exif_orientation_is_corrected() -> None:
    image = Image.new("RGB", (80, 40), "red")
    exif = Image.Exif()
    exif[274] = 6  # 顺时针旋转 90 度
    data = _encode(image, "JPEG", exif=exif.tobytes())

    decoded = decode_image(data, "image/jpeg")

    assert decoded.pixels.shape[:2] == (80, 40)


def test_decode_rejects_bad_inputs() -> None:
    with pytest.raises(DecodeError):
        decode_image(b"not an image", "image/png")
    with pytest.raises(DecodeError):
        decode_image(_encode(Image.new("RGB", (5, 40))), "image/png")

    limits = ProcessingConfig(format_size_limits={"default": 10})
    with pytest.raises(DecodeError):
        decode_image(_encode(Image.new("RGB", (40, 40))), "image/png", limits)


def test_extract_metadata_reads_camera_tags() -> None:
    exif = Image.Exif()
    exif[271] = "DJI"
    exif[272] = "FC3582"
    exif[306] = "2024:05:01 10:30:00"
    data = _encode(Image.new("RGB", (64, 64), "gray"), "JPEG", exif=exif.tobytes())

    metadata = extract_metadata(data)

    assert metadata.make == "DJI"
    assert metadata.model == "FC3582"
    assert metadata.timestamp == "2024:05:01 10:30:00"
    assert metadata.file_format == "JPEG"
    assert metadata.bit_depth == 8
    # 50 基础 + 10 相机 + 5 时间戳，JPEG 不加分
    assert technical_score(metadata) == 65


def test_extract_metadata_never_raises() -> None:
    assert extract_metadata(b"garbage") == CameraMetadata()


def test_technical_score_rules() -> None:
    complete = CameraMetadata(
        make="DJI",
        model="M3E",
        iso=100,
        aperture=2.8,
        latitude=22.5,
        longitude=114.0,
        timestamp="2024:05:01 10:30:00",
        file_format="TIFF",
    )
    noisy_png = CameraMetadata(iso=3200, aperture=4.0, file_format="PNG")

    assert technical_score(complete) == 100
    assert technical_score(noisy_png) == 60
    assert technical_score(CameraMetadata(file_format="WEBP")) == 45


@pytest.mark.parametrize("size", [(12, 4000), (4000, 12), (10, 2000)])
def test_extreme_aspect_strip_keeps_minimum_edge(size) -> None:
    rng = np.random.default_rng(5)
    width, height = size
    strip = Image.fromarray(rng.integers(0, 256, size=(height, width), dtype=np.uint8)).convert("RGB")

    decoded = decode_image(_encode(strip), "image/png")

    assert max(decoded.width, decoded.height) == 800
    assert min(decoded.width, decoded.height) == 10
    assert decoded.original_size == size
    assert decoded.thumbnail.startswith("data:image/jpeg;base64,")
