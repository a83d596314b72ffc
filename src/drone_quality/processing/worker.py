"""并发处理的工作单元：单图分析流程与工作线程。"""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from drone_quality.analysis.blur import analyze_blur
from drone_quality.analysis.exposure import analyze_exposure
from drone_quality.analysis.features import analyze_features
from drone_quality.analysis.metadata import extract_metadata, technical_score
from drone_quality.analysis.noise import analyze_noise
from drone_quality.analysis.scoring import ComponentScores, CompositeScorer
from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.core.config import AnalysisConfig
from drone_quality.core.exceptions import AnalysisError, DecodeError, WorkerCrashError
from drone_quality.core.models import ImageAnalysis
from drone_quality.processing.image_loader import decode_image
from drone_quality.processing.messages import (
    AnalyzeRequest,
    DoneMessage,
    Emit,
    ErrorMessage,
    ProgressMessage,
    WorkerFaultMessage,
)

LOGGER = logging.getLogger(__name__)

STOP = object()

DECODE_PERCENT = 10
METADATA_PERCENT = 25
STAGE_PERCENTS = (40, 55, 70, 85)
SCORING_PERCENT = 90
DONE_PERCENT = 100

# 这些异常表示线程本身已不可信，直接终止工作线程
FATAL_ERRORS = (WorkerCrashError, MemoryError)

TaskRunner = Callable[[AnalyzeRequest, Emit], ImageAnalysis]


class SlotState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    CRASHED = "crashed"
    REPLACING = "replacing"


@dataclass(slots=True)
class WorkerSlot:
    worker_id: int
    state: SlotState = SlotState.IDLE
    current_task: Optional[str] = None
    restarts: int = 0
    thread: Optional[threading.Thread] = field(default=None, repr=False)


class ImageAnalyzer:
    """执行单张图片的完整分析：解码、四项像素分析、元数据、综合评分。"""

    def __init__(
        self,
        config: AnalysisConfig,
        dispatcher: ComputeDispatcher,
        scorer: Optional[CompositeScorer] = None,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._scorer = scorer or CompositeScorer(config.scoring)
        self._executor: Optional[ThreadPoolExecutor] = None

    def __call__(self, request: AnalyzeRequest, emit: Emit) -> ImageAnalysis:
        return self.run(request, emit)

    def run(self, request: AnalyzeRequest, emit: Optional[Emit] = None) -> ImageAnalysis:
        config = self._config
        source = request.source
        started = time.perf_counter()
        last_percent = 0

        def progress(stage: str, percent: int) -> None:
            nonlocal last_percent
            last_percent = max(last_percent, percent)
            if emit is not None:
                emit(ProgressMessage(request.task_id, last_percent, stage, source.name))

        def elapsed() -> float:
            return (time.perf_counter() - started) * 1000.0

        progress("decode", DECODE_PERCENT)
        try:
            decoded = decode_image(
                source.data,
                source.mime_type,
                config.processing,
                gpu_available=self._dispatcher.gpu_available,
            )
        except DecodeError as exc:
            LOGGER.warning("解码失败 %s: %s", source.name, exc)
            return ImageAnalysis(
                id=request.task_id,
                name=source.name,
                size=source.size,
                source=source.path,
                processing_duration=elapsed(),
                error=str(exc),
            )

        progress("metadata", METADATA_PERCENT)
        metadata = extract_metadata(source.data)

        pixels = decoded.pixels
        stages: Dict[str, Callable[[], Any]] = {
            "blur": partial(analyze_blur, pixels, self._dispatcher, config.blur),
            "exposure": partial(analyze_exposure, pixels, self._dispatcher, config.exposure),
            "noise": partial(analyze_noise, pixels, self._dispatcher, config.noise),
            "features": partial(analyze_features, pixels, self._dispatcher, config.features),
        }
        warnings: List[str] = []
        results = self._run_stages(stages, warnings, progress)

        exposure = results.get("exposure")
        noise = results.get("noise")
        descriptor = results.get("features")
        components = ComponentScores(
            blur=results.get("blur"),
            exposure=exposure.exposure_score if exposure is not None else None,
            noise=noise.noise_score if noise is not None else None,
            technical=technical_score(metadata),
            descriptor=descriptor.descriptor_score if descriptor is not None else None,
        )

        progress("scoring", SCORING_PERCENT)
        composite = None
        try:
            composite = self._scorer.score(components, request.use_case, request.scene_type)
        except AnalysisError as exc:
            LOGGER.warning("综合评分失败 %s: %s", source.name, exc)
            warnings.append(str(exc))

        if descriptor is not None:
            photogrammetric, suitability = self._scorer.photogrammetric_score(components)
            descriptor = replace(
                descriptor,
                photogrammetric_score=photogrammetric,
                reconstruction_suitability=suitability,
            )

        analysis = ImageAnalysis(
            id=request.task_id,
            name=source.name,
            size=source.size,
            thumbnail=decoded.thumbnail,
            source=source.path,
            blur_score=results.get("blur"),
            exposure_analysis=exposure,
            noise_analysis=noise,
            descriptor_analysis=descriptor,
            metadata=metadata,
            composite_score=composite,
            processing_duration=elapsed(),
            warnings=tuple(warnings),
        )
        progress("done", DONE_PERCENT)
        LOGGER.debug("完成分析 %s，用时 %.1f ms", source.name, analysis.processing_duration)
        return analysis

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _run_stages(
        self,
        stages: Dict[str, Callable[[], Any]],
        warnings: List[str],
        progress: Callable[[str, int], None],
    ) -> Dict[str, Any]:
        """执行相互独立的分析阶段，单个阶段失败只记录警告。"""

        results: Dict[str, Any] = {}
        percents = iter(STAGE_PERCENTS)

        def record(name: str, call: Callable[[], Any]) -> None:
            try:
                results[name] = call()
            except FATAL_ERRORS:
                raise
            except Exception as exc:  # noqa: BLE001
                error = AnalysisError(name, str(exc) or type(exc).__name__)
                LOGGER.warning("分析阶段失败 %s", error)
                warnings.append(str(error))
            progress(name, next(percents, STAGE_PERCENTS[-1]))

        if not self._config.parallel_stages:
            for name, stage in stages.items():
                record(name, stage)
            return results

        executor = self._stage_executor(len(stages))
        futures: Dict[Future, str] = {executor.submit(stage): name for name, stage in stages.items()}
        for future in as_completed(futures):
            record(futures[future], future.result)
        return results

    def _stage_executor(self, workers: int) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="analysis-stage")
        return self._executor


class WorkerThread(threading.Thread):
    """从共享请求队列取任务执行，结果以消息形式发回调度器。"""

    def __init__(
        self,
        slot: WorkerSlot,
        requests: "queue.Queue[Any]",
        messages: "queue.Queue[Any]",
        runner: TaskRunner,
        is_current: Callable[[AnalyzeRequest], bool],
        cleanup: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__(name=f"quality-worker-{slot.worker_id}", daemon=True)
        self.slot = slot
        self._requests = requests
        self._messages = messages
        self._runner = runner
        self._is_current = is_current
        self._cleanup = cleanup

    def run(self) -> None:
        LOGGER.debug("工作线程 %d 启动", self.slot.worker_id)
        try:
            while True:
                request = self._requests.get()
                if request is STOP:
                    break
                if not self._is_current(request):
                    LOGGER.debug("丢弃已清空队列中的任务 %s", request.task_id)
                    continue
                self._handle(request)
        except FATAL_ERRORS as exc:
            LOGGER.exception("工作线程 %d 崩溃", self.slot.worker_id)
            self.slot.state = SlotState.CRASHED
            self._messages.put(WorkerFaultMessage(self.slot.worker_id, self.slot.current_task, str(exc)))
        finally:
            if self._cleanup is not None:
                self._cleanup()
        LOGGER.debug("工作线程 %d 退出", self.slot.worker_id)

    def _handle(self, request: AnalyzeRequest) -> None:
        self.slot.state = SlotState.BUSY
        self.slot.current_task = request.task_id
        try:
            analysis = self._runner(request, self._messages.put)
        except FATAL_ERRORS:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("任务 %s 执行失败: %s", request.task_id, exc)
            self._messages.put(ErrorMessage(request.task_id, str(exc) or type(exc).__name__, exc))
        else:
            self._messages.put(DoneMessage(request.task_id, analysis))
        self.slot.current_task = None
        self.slot.state = SlotState.IDLE


def new_task_id() -> str:
    return uuid.uuid4().hex
