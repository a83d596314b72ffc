"""文件扫描与筛选逻辑。"""

from __future__ import annotations

import logging
import mimetypes
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from drone_quality.core.models import SourceImage

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".tif", ".tiff"}
DEFAULT_PATTERNS = ("*.jpg", "*.jpeg", "*.png", "*.tif", "*.tiff")


def _iter_candidate_files(path: Path, recursive: bool) -> Iterator[Path]:
    """遍历路径下的所有文件。"""

    if path.is_file():
        yield path
        return

    if not path.is_dir():
        return

    iterator = path.rglob("*") if recursive else path.glob("*")
    for candidate in iterator:
        if candidate.is_file():
            yield candidate


def _matches_any(name: str, patterns: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch(lowered, pattern.lower()) for pattern in patterns)


def guess_mime_type(path: Path) -> str:
    mime, _ = mimetypes.guess_type(path.name)
    return mime or "application/octet-stream"


def collect_image_paths(
    sources: Iterable[Path],
    recursive: bool = False,
    include_patterns: Sequence[str] = DEFAULT_PATTERNS,
    exclude_patterns: Sequence[str] = (),
) -> list[Path]:
    """扫描输入路径，返回去重并排序后的图片路径。"""

    collected: list[Path] = []
    seen_paths: set[Path] = set()

    for root in sources:
        for candidate in _iter_candidate_files(Path(root).resolve(), recursive):
            if candidate in seen_paths:
                continue
            seen_paths.add(candidate)

            if candidate.suffix.lower() not in IMAGE_EXTENSIONS:
                continue
            if not _matches_any(candidate.name, include_patterns):
                continue
            if exclude_patterns and _matches_any(candidate.name, exclude_patterns):
                continue
            collected.append(candidate)

    collected.sort(key=lambda x: str(x).lower())
    return collected


def load_source_images(paths: Iterable[Path]) -> list[SourceImage]:
    """读取文件字节，无法读取的文件记录日志后跳过。"""

    images: list[SourceImage] = []
    for path in paths:
        try:
            data = path.read_bytes()
        except OSError as exc:
            LOGGER.warning("读取文件失败 %s: %s", path, exc)
            continue
        images.append(SourceImage(name=path.name, data=data, mime_type=guess_mime_type(path), path=path))
    return images
