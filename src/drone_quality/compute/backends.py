"""GPU 后端接口与基于 OpenCV OpenCL 透明 API 的实现。"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import cv2
import numpy as np

from drone_quality.core.exceptions import GPUUnavailableError

LOGGER = logging.getLogger(__name__)

_CONTEXT_IDS = itertools.count(1)


@dataclass(frozen=True, slots=True)
class GPUCapabilities:
    available: bool
    max_texture_size: int = 0
    supports_float: bool = False
    device_name: Optional[str] = None


@dataclass(eq=False)
class GPUContext:
    """池中的一个 GPU 执行上下文。"""

    backend: str
    handle: Any = None
    context_id: int = field(default_factory=lambda: next(_CONTEXT_IDS))
    created_at: float = field(default_factory=time.monotonic)


class GPUBackend:
    """GPU 后端接口，测试中可注入替代实现。"""

    name = "abstract"

    def capabilities(self) -> GPUCapabilities:
        raise NotImplementedError

    def create_context(self) -> GPUContext:
        raise NotImplementedError

    def destroy_context(self, context: GPUContext) -> None:
        """默认无需释放任何资源。"""

    def upload(self, context: GPUContext, array: np.ndarray) -> Any:
        raise NotImplementedError

    def download(self, context: GPUContext, value: Any) -> np.ndarray:
        raise NotImplementedError


class OpenCLBackend(GPUBackend):
    """通过 ``cv2.UMat`` 把 OpenCV 运算交给 OpenCL 设备执行。"""

    name = "opencl"

    def capabilities(self) -> GPUCapabilities:
        try:
            if not cv2.ocl.haveOpenCL():
                return GPUCapabilities(available=False)
            cv2.ocl.setUseOpenCL(True)
            device = cv2.ocl.Device.getDefault()
            if not device.available():
                return GPUCapabilities(available=False)
            return GPUCapabilities(
                available=True,
                max_texture_size=int(device.image2DMaxWidth()),
                supports_float=True,
                device_name=str(device.name()),
            )
        except (cv2.error, AttributeError) as exc:
            LOGGER.warning("查询 OpenCL 设备失败，仅使用 CPU: %s", exc)
            return GPUCapabilities(available=False)

    def create_context(self) -> GPUContext:
        if not cv2.ocl.useOpenCL():
            raise GPUUnavailableError("OpenCL 未启用")
        return GPUContext(backend=self.name)

    def upload(self, context: GPUContext, array: np.ndarray) -> Any:
        return cv2.UMat(np.ascontiguousarray(array))

    def download(self, context: GPUContext, value: Any) -> np.ndarray:
        if isinstance(value, cv2.UMat):
            return value.get()
        return np.asarray(value)
