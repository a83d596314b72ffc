"""多工作线程任务调度。

固定数量的工作线程从共享队列取任务，结果通过消息队列交给收集线程，
由收集线程完成对应的 Future 并更新整体进度。工作线程崩溃时只有它持有的
任务失败，该槽位在短暂退避后由新线程替换。
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.core.config import AnalysisConfig, SceneType, UseCase
from drone_quality.core.exceptions import DroneQualityError, TaskCancelledError, WorkerCrashError
from drone_quality.core.models import ImageAnalysis, SourceImage
from drone_quality.core.progress import ProcessingProgress, ProcessingStep, step_for_stage
from drone_quality.processing.messages import (
    AnalyzeRequest,
    DoneMessage,
    ErrorMessage,
    ProgressMessage,
    WorkerFaultMessage,
    WorkerMessage,
)
from drone_quality.processing.worker import (
    STOP,
    ImageAnalyzer,
    SlotState,
    TaskRunner,
    WorkerSlot,
    WorkerThread,
    new_task_id,
)

LOGGER = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[ProcessingProgress], None]]
CompleteCallback = Optional[Callable[[ImageAnalysis], None]]

CLEARED_MESSAGE = "Queue cleared"


@dataclass(slots=True)
class TaskHandle:
    """提交任务后返回的句柄。"""

    task_id: str
    name: str
    future: "Future[ImageAnalysis]"

    def result(self, timeout: Optional[float] = None) -> ImageAnalysis:
        return self.future.result(timeout)

    def done(self) -> bool:
        return self.future.done()


@dataclass(slots=True)
class _PendingTask:
    handle: TaskHandle
    percent: int = 0


@dataclass(slots=True)
class _Replacement:
    slot: WorkerSlot
    timer: threading.Timer = field(repr=False)


class TaskScheduler:
    """固定大小的分析工作线程池。"""

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        pool_size: Optional[int] = None,
        dispatcher: Optional[ComputeDispatcher] = None,
        runner: Optional[TaskRunner] = None,
        on_progress: ProgressCallback = None,
        on_complete: CompleteCallback = None,
        restart_backoff: Optional[float] = None,
    ) -> None:
        self._config = config or AnalysisConfig()
        self._config.validate()
        self._pool_size = pool_size or self._config.max_workers
        if self._pool_size <= 0:
            raise ValueError("pool_size 必须大于 0")
        self._restart_backoff = self._config.restart_backoff if restart_backoff is None else restart_backoff
        self._dispatcher = dispatcher
        self._owns_dispatcher = dispatcher is None and runner is None
        self._runner = runner
        self._on_progress = on_progress
        self._on_complete = on_complete

        self._lock = threading.RLock()
        self._requests: "queue.Queue[Any]" = queue.Queue()
        self._messages: "queue.Queue[Any]" = queue.Queue()
        self._pending: Dict[str, _PendingTask] = {}
        self._progress = ProcessingProgress()
        self._generation = 0
        self._slots: List[WorkerSlot] = []
        self._replacements: Dict[int, _Replacement] = {}
        self._collector: Optional[threading.Thread] = None
        self._started = False
        self._closing = False

    def __enter__(self) -> "TaskScheduler":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    @property
    def progress(self) -> ProcessingProgress:
        with self._lock:
            return self._progress.copy()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def slot_states(self) -> List[SlotState]:
        with self._lock:
            return [slot.state for slot in self._slots]

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            if self._closing:
                raise RuntimeError("调度器已关闭")
            if self._runner is None and self._dispatcher is None:
                self._dispatcher = ComputeDispatcher(self._config.compute)
            self._collector = threading.Thread(target=self._collect, name="quality-collector", daemon=True)
            self._collector.start()
            for worker_id in range(self._pool_size):
                slot = WorkerSlot(worker_id=worker_id)
                self._slots.append(slot)
                self._start_worker(slot)
            self._started = True
        LOGGER.info("任务调度器启动，工作线程 %d 个", self._pool_size)

    def submit(
        self,
        source: SourceImage,
        use_case: Optional[UseCase] = None,
        scene_type: Optional[SceneType] = None,
    ) -> TaskHandle:
        """提交一张图片，返回可等待结果的句柄。"""

        self.start()
        task_id = new_task_id()
        future: "Future[ImageAnalysis]" = Future()
        future.set_running_or_notify_cancel()
        handle = TaskHandle(task_id=task_id, name=source.name, future=future)
        with self._lock:
            if self._closing:
                raise RuntimeError("调度器已关闭")
            request = AnalyzeRequest(
                task_id=task_id,
                source=source,
                use_case=use_case or self._config.use_case,
                scene_type=scene_type or self._config.scene_type,
                generation=self._generation,
            )
            self._pending[task_id] = _PendingTask(handle)
            if not self._progress.is_processing:
                self._progress = ProcessingProgress(is_processing=True, start_time=time.time())
            self._progress.total += 1
            self._requests.put(request)
        return handle

    def submit_batch(
        self,
        sources: Iterable[SourceImage],
        use_case: Optional[UseCase] = None,
        scene_type: Optional[SceneType] = None,
    ) -> List[TaskHandle]:
        # 持锁提交，整批任务计入同一轮进度
        with self._lock:
            return [self.submit(source, use_case, scene_type) for source in sources]

    def clear_queue(self) -> int:
        """取消全部未完成任务；进行中的任务结果将被丢弃。返回取消数量。"""

        with self._lock:
            self._generation += 1
            self._drain_requests()
            cancelled = list(self._pending.values())
            self._pending.clear()
            self._progress = ProcessingProgress()
        for pending in cancelled:
            pending.handle.future.set_exception(TaskCancelledError(CLEARED_MESSAGE))
        if cancelled:
            LOGGER.info("已清空队列，取消 %d 个任务", len(cancelled))
        return len(cancelled)

    def shutdown(self, wait: bool = True) -> None:
        """停止调度器。wait=True 时先处理完已排队的任务。"""

        with self._lock:
            if self._closing:
                return
            self._closing = True
            started = self._started
            for replacement in self._replacements.values():
                replacement.timer.cancel()
            self._replacements.clear()
        if not started:
            return

        if not wait:
            self.clear_queue()
        for _ in self._slots:
            self._requests.put(STOP)
        for slot in list(self._slots):
            if slot.thread is not None:
                slot.thread.join()
        self._messages.put(STOP)
        if self._collector is not None:
            self._collector.join()

        with self._lock:
            leftover = list(self._pending.values())
            self._pending.clear()
            self._progress.is_processing = False
        for pending in leftover:
            pending.handle.future.set_exception(TaskCancelledError("调度器已关闭"))
        if self._owns_dispatcher and self._dispatcher is not None:
            self._dispatcher.close()
        LOGGER.info("任务调度器已停止")

    def _start_worker(self, slot: WorkerSlot) -> None:
        runner = self._runner
        cleanup = None
        if runner is None:
            assert self._dispatcher is not None
            analyzer = ImageAnalyzer(self._config, self._dispatcher)
            runner, cleanup = analyzer, analyzer.close
        thread = WorkerThread(slot, self._requests, self._messages, runner, self._is_current, cleanup)
        slot.thread = thread
        slot.state = SlotState.IDLE
        thread.start()

    def _is_current(self, request: AnalyzeRequest) -> bool:
        with self._lock:
            return request.generation == self._generation and request.task_id in self._pending

    def _drain_requests(self) -> None:
        stops = 0
        while True:
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                break
            if item is STOP:
                stops += 1
        for _ in range(stops):
            self._requests.put(STOP)

    def _collect(self) -> None:
        while True:
            message = self._messages.get()
            if message is STOP:
                break
            try:
                self._dispatch(message)
            except Exception:  # noqa: BLE001
                LOGGER.exception("处理工作线程消息失败: %r", message)

    def _dispatch(self, message: WorkerMessage) -> None:
        if isinstance(message, ProgressMessage):
            self._handle_progress(message)
        elif isinstance(message, DoneMessage):
            pending = self._finish(message.task_id, message.analysis.name)
            if pending is None:
                return
            pending.handle.future.set_result(message.analysis)
            self._notify_complete(message.analysis)
        elif isinstance(message, ErrorMessage):
            pending = self._finish(message.task_id, None)
            if pending is None:
                return
            exception = message.exception
            if not isinstance(exception, Exception):
                exception = DroneQualityError(message.error)
            pending.handle.future.set_exception(exception)
        elif isinstance(message, WorkerFaultMessage):
            self._handle_fault(message)

    def _handle_progress(self, message: ProgressMessage) -> None:
        with self._lock:
            pending = self._pending.get(message.task_id)
            if pending is None or message.percent < pending.percent:
                return
            pending.percent = message.percent
            self._progress.current_step = step_for_stage(message.stage)
            self._progress.current_image_name = message.image_name
            snapshot = self._progress.copy()
        self._notify_progress(snapshot)

    def _finish(self, task_id: str, name: Optional[str]) -> Optional[_PendingTask]:
        with self._lock:
            pending = self._pending.pop(task_id, None)
            if pending is None:
                LOGGER.debug("忽略已取消任务的结果 %s", task_id)
                return None
            self._progress.current += 1
            if name:
                self._progress.current_image_name = name
            if not self._pending:
                self._progress.is_processing = False
                self._progress.current_step = ProcessingStep.EXPORT
            snapshot = self._progress.copy()
        self._notify_progress(snapshot)
        return pending

    def _handle_fault(self, message: WorkerFaultMessage) -> None:
        LOGGER.error("工作线程 %d 崩溃: %s", message.worker_id, message.error)
        if message.task_id is not None:
            pending = self._finish(message.task_id, None)
            if pending is not None:
                pending.handle.future.set_exception(
                    WorkerCrashError(f"工作线程 {message.worker_id} 崩溃: {message.error}")
                )
        with self._lock:
            if self._closing:
                return
            slot = self._slots[message.worker_id]
            slot.state = SlotState.CRASHED
            timer = threading.Timer(self._restart_backoff, self._replace_worker, args=(slot,))
            timer.daemon = True
            self._replacements[slot.worker_id] = _Replacement(slot, timer)
            timer.start()

    def _replace_worker(self, slot: WorkerSlot) -> None:
        with self._lock:
            self._replacements.pop(slot.worker_id, None)
            if self._closing:
                return
            slot.state = SlotState.REPLACING
            slot.restarts += 1
            self._start_worker(slot)
        LOGGER.info("工作线程 %d 已替换（第 %d 次）", slot.worker_id, slot.restarts)

    def _notify_progress(self, snapshot: ProcessingProgress) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(snapshot)
        except Exception:  # noqa: BLE001
            LOGGER.exception("进度回调执行失败")

    def _notify_complete(self, analysis: ImageAnalysis) -> None:
        if self._on_complete is None:
            return
        try:
            self._on_complete(analysis)
        except Exception:  # noqa: BLE001
            LOGGER.exception("完成回调执行失败")
