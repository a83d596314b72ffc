"""GPU/CPU 计算调度。

每次调用根据像素数量、后端能力与历史加速比选择执行路径。GPU 路径的任何
失败都会记录日志并在 CPU 上重新执行，调用方只会看到 CPU 等价的结果。
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from drone_quality.compute.backends import GPUBackend, GPUCapabilities, GPUContext, OpenCLBackend
from drone_quality.compute.kernels import Kernel
from drone_quality.compute.pool import ResourcePool
from drone_quality.core.config import ComputeConfig
from drone_quality.core.exceptions import GPUUnavailableError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BenchmarkSample:
    """一次调度的耗时记录。CPU-only 调度没有 GPU 耗时。"""

    operation: str
    pixel_count: int
    timestamp: float
    cpu_time_ms: Optional[float] = None
    gpu_time_ms: Optional[float] = None
    speedup: Optional[float] = None
    fell_back: bool = False


@dataclass(slots=True)
class PerformanceStats:
    total_dispatches: int = 0
    gpu_dispatches: int = 0
    cpu_dispatches: int = 0
    fallbacks: int = 0
    average_speedup: Optional[float] = None
    gpu_available: bool = False
    gpu_deprioritized: bool = False
    device_name: Optional[str] = None
    history_size: int = 0
    operations: Dict[str, int] = field(default_factory=dict)


class ComputeDispatcher:
    """线程安全的计算调度器，基准历史归实例所有。"""

    def __init__(
        self,
        config: Optional[ComputeConfig] = None,
        backend: Optional[GPUBackend] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._config = config or ComputeConfig()
        self._config.validate()
        self._clock = clock
        self._lock = threading.Lock()
        self._history: Deque[BenchmarkSample] = deque(maxlen=self._config.benchmark_capacity)
        self._deprioritized = False
        self._gpu_runs: Counter[str] = Counter()
        self._counts: Counter[str] = Counter()

        if backend is None and self._config.enable_gpu:
            backend = OpenCLBackend()
        self._backend = backend
        self._capabilities = backend.capabilities() if backend is not None else GPUCapabilities(available=False)
        self._pool: Optional[ResourcePool[GPUContext]] = None
        if self._backend is not None and self._capabilities.available:
            self._pool = ResourcePool(
                factory=self._backend.create_context,
                destroy=self._backend.destroy_context,
                max_size=self._config.pool_size,
                idle_timeout=self._config.context_idle_timeout,
                reaper_interval=self._config.reaper_interval,
            )
            LOGGER.info("GPU 计算可用: %s", self._capabilities.device_name or self._backend.name)
        else:
            LOGGER.info("GPU 计算不可用，全部运算在 CPU 上执行")

    @property
    def gpu_available(self) -> bool:
        with self._lock:
            return self._pool is not None and not self._deprioritized

    def should_use_gpu(self, kernel: Kernel, shape: Sequence[int]) -> bool:
        if not self.gpu_available:
            return False
        height, width = int(shape[0]), int(shape[1])
        if height * width < self._config.min_pixels_for_gpu:
            return False
        if max(height, width) > self._capabilities.max_texture_size:
            return False
        if kernel.requires_float and not self._capabilities.supports_float:
            return False
        return True

    def run(self, kernel: Kernel, *arrays: np.ndarray, **params: Any) -> Any:
        """执行一个像素运算，返回 ndarray 或 ndarray 元组。"""

        inputs = [_prepare(array, kernel) for array in arrays]
        shape = inputs[0].shape
        pixel_count = int(shape[0] * shape[1])

        if not self.should_use_gpu(kernel, shape):
            result, cpu_ms = self._run_cpu(kernel, inputs, params)
            self._record(BenchmarkSample(kernel.name, pixel_count, time.time(), cpu_time_ms=cpu_ms), "cpu")
            return result

        try:
            result, gpu_ms = self._run_gpu(kernel, inputs, params)
        except GPUUnavailableError as exc:
            LOGGER.warning("GPU 执行 %s 失败，回退到 CPU: %s", kernel.name, exc)
            result, cpu_ms = self._run_cpu(kernel, inputs, params)
            self._record(
                BenchmarkSample(kernel.name, pixel_count, time.time(), cpu_time_ms=cpu_ms, fell_back=True),
                "fallback",
            )
            return result

        cpu_ms = None
        if self._needs_reference(kernel.name):
            _, cpu_ms = self._run_cpu(kernel, inputs, params)
        speedup = cpu_ms / gpu_ms if cpu_ms is not None and gpu_ms > 0 else None
        self._record(
            BenchmarkSample(
                kernel.name,
                pixel_count,
                time.time(),
                cpu_time_ms=cpu_ms,
                gpu_time_ms=gpu_ms,
                speedup=speedup,
            ),
            "gpu",
        )
        return result

    def history(self) -> List[BenchmarkSample]:
        with self._lock:
            return list(self._history)

    def performance_stats(self) -> PerformanceStats:
        with self._lock:
            speedups = [sample.speedup for sample in self._history if sample.speedup is not None]
            operations = Counter(sample.operation for sample in self._history)
            return PerformanceStats(
                total_dispatches=sum(self._counts.values()),
                gpu_dispatches=self._counts["gpu"],
                cpu_dispatches=self._counts["cpu"],
                fallbacks=self._counts["fallback"],
                average_speedup=sum(speedups) / len(speedups) if speedups else None,
                gpu_available=self._pool is not None,
                gpu_deprioritized=self._deprioritized,
                device_name=self._capabilities.device_name,
                history_size=len(self._history),
                operations=dict(operations),
            )

    def reset_session(self) -> None:
        """清空基准历史并重新允许 GPU。"""

        with self._lock:
            self._history.clear()
            self._gpu_runs.clear()
            self._counts.clear()
            self._deprioritized = False
        LOGGER.debug("计算调度会话已重置")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()

    def _run_cpu(self, kernel: Kernel, inputs: List[np.ndarray], params: Dict[str, Any]) -> Tuple[Any, float]:
        started = self._clock()
        result = _to_numpy(kernel.fn(*inputs, **params))
        return result, (self._clock() - started) * 1000.0

    def _run_gpu(self, kernel: Kernel, inputs: List[np.ndarray], params: Dict[str, Any]) -> Tuple[Any, float]:
        assert self._pool is not None and self._backend is not None
        backend = self._backend
        try:
            started = self._clock()
            with self._pool.lease(self._config.lease_timeout) as context:
                uploaded = [backend.upload(context, array) for array in inputs]
                output = kernel.fn(*uploaded, **params)
                if isinstance(output, tuple):
                    result: Any = tuple(backend.download(context, item) for item in output)
                else:
                    result = backend.download(context, output)
            return result, (self._clock() - started) * 1000.0
        except Exception as exc:  # noqa: BLE001
            raise GPUUnavailableError(str(exc) or type(exc).__name__) from exc

    def _needs_reference(self, operation: str) -> bool:
        with self._lock:
            self._gpu_runs[operation] += 1
            runs = self._gpu_runs[operation]
        if runs <= self._config.calibration_runs:
            return True
        return self._config.benchmark_interval > 0 and runs % self._config.benchmark_interval == 0

    def _record(self, sample: BenchmarkSample, kind: str) -> None:
        LOGGER.debug("基准记录 %s: cpu=%s gpu=%s", sample.operation, sample.cpu_time_ms, sample.gpu_time_ms)
        with self._lock:
            self._history.append(sample)
            self._counts[kind] += 1
            if sample.speedup is None or self._deprioritized:
                return
            recent = [item.speedup for item in self._history if item.speedup is not None]
            recent = recent[-self._config.speedup_window :]
            if len(recent) < self._config.min_speedup_samples:
                return
            mean_speedup = sum(recent) / len(recent)
            if mean_speedup < self._config.speedup_threshold:
                self._deprioritized = True
                LOGGER.warning(
                    "GPU 平均加速比 %.2fx 低于阈值 %.2fx，本会话改用 CPU",
                    mean_speedup,
                    self._config.speedup_threshold,
                )


def _prepare(array: np.ndarray, kernel: Kernel) -> np.ndarray:
    if kernel.requires_float:
        return np.ascontiguousarray(array, dtype=np.float32)
    return np.ascontiguousarray(array)


def _to_numpy(value: Any) -> Any:
    if isinstance(value, tuple):
        return tuple(np.asarray(item) for item in value)
    return np.asarray(value)
