"""任务调度器：结果投递、清空队列与工作线程崩溃恢复。"""

from __future__ import annotations

import threading
import time
from concurrent.futures import wait

import pytest

from drone_quality.core.config import AnalysisConfig
from drone_quality.core.exceptions import TaskCancelledError, WorkerCrashError
from drone_quality.core.models import ImageAnalysis, SourceImage
from drone_quality.core.progress import ProcessingProgress
from drone_quality.processing.messages import AnalyzeRequest, Emit, ProgressMessage
from drone_quality.processing.scheduler import TaskScheduler
from drone_quality.processing.worker import SlotState


def _source(name: str) -> SourceImage:
    return SourceImage(name=name, data=b"unused", mime_type="image/png")


def _analysis(request: AnalyzeRequest) -> ImageAnalysis:
    return ImageAnalysis(id=request.task_id, name=request.source.name, size=request.source.size)


def _quick_runner(request: AnalyzeRequest, emit: Emit) -> ImageAnalysis:
    for percent, stage in ((10, "decode"), (55, "blur"), (100, "done")):
        emit(ProgressMessage(request.task_id, percent, stage, request.source.name))
    return _analysis(request)


def test_results_are_delivered_with_progress() -> None:
    updates: list[ProcessingProgress] = []
    completed: list[str] = []

    with TaskScheduler(
        AnalysisConfig(),
        pool_size=3,
        runner=_quick_runner,
        on_progress=updates.append,
        on_complete=lambda analysis: completed.append(analysis.name),
    ) as scheduler:
        handles = scheduler.submit_batch([_source(f"img_{i}.png") for i in range(6)])
        results = [handle.result(timeout=5) for handle in handles]
        final = scheduler.progress

    assert [result.name for result in results] == [f"img_{i}.png" for i in range(6)]
    assert sorted(completed) == sorted(result.name for result in results)
    assert final.current == final.total == 6
    assert not final.is_processing
    currents = [update.current for update in updates]
    assert currents == sorted(currents)


def test_clear_queue_rejects_pending_and_discards_in_flight() -> None:
    started = threading.Event()
    release = threading.Event()
    completed: list[ImageAnalysis] = []

    def blocking_runner(request: AnalyzeRequest, emit: Emit) -> ImageAnalysis:
        started.set()
        release.wait(timeout=5)
        return _analysis(request)

    scheduler = TaskScheduler(AnalysisConfig(), pool_size=1, runner=blocking_runner, on_complete=completed.append)
    try:
        handles = scheduler.submit_batch([_source(f"img_{i}.png") for i in range(3)])
        assert started.wait(timeout=5)
        assert scheduler.pending_count == 3

        cancelled = scheduler.clear_queue()
        release.set()

        assert cancelled == 3
        assert scheduler.pending_count == 0
        for handle in handles:
            with pytest.raises(TaskCancelledError, match="Queue cleared"):
                handle.result(timeout=5)
        assert scheduler.progress.total == 0
    finally:
        scheduler.shutdown()

    assert completed == []


def test_worker_crash_fails_only_its_task_and_slot_is_replaced() -> None:
    def crashing_runner(request: AnalyzeRequest, emit: Emit) -> ImageAnalysis:
        if request.source.name == "crash.png":
            raise WorkerCrashError("simulated fault")
        return _analysis(request)

    with TaskScheduler(AnalysisConfig(), pool_size=1, runner=crashing_runner, restart_backoff=0.01) as scheduler:
        crash = scheduler.submit(_source("crash.png"))
        later = [scheduler.submit(_source(f"ok_{i}.png")) for i in range(3)]

        with pytest.raises(WorkerCrashError):
            crash.result(timeout=5)
        done, not_done = wait([handle.future for handle in later], timeout=5)

        assert not not_done
        assert [handle.result().name for handle in later] == ["ok_0.png", "ok_1.png", "ok_2.png"]

        deadline = time.monotonic() + 5
        while scheduler.slot_states() != [SlotState.IDLE] and time.monotonic() < deadline:
            time.sleep(0.01)
        assert scheduler.slot_states() == [SlotState.IDLE]


def test_task_exception_rejects_only_that_handle() -> None:
    def flaky_runner(request: AnalyzeRequest, emit: Emit) -> ImageAnalysis:
        if request.source.name == "bad.png":
            raise ValueError("unexpected pixel layout")
        return _analysis(request)

    with TaskScheduler(AnalysisConfig(), pool_size=2, runner=flaky_runner) as scheduler:
        bad = scheduler.submit(_source("bad.png"))
        good = scheduler.submit(_source("good.png"))

        with pytest.raises(ValueError, match="unexpected pixel layout"):
            bad.result(timeout=5)
        assert good.result(timeout=5).name == "good.png"


def test_progress_percent_never_decreases() -> None:
    seen: list[str] = []

    def reordering_runner(request: AnalyzeRequest, emit: Emit) -> ImageAnalysis:
        for percent, stage in ((40, "exposure"), (25, "metadata"), (85, "features")):
            emit(ProgressMessage(request.task_id, percent, stage, request.source.name))
        return _analysis(request)

    def record(progress: ProcessingProgress) -> None:
        seen.append(progress.current_step.value)

    with TaskScheduler(AnalysisConfig(), pool_size=1, runner=reordering_runner, on_progress=record) as scheduler:
        scheduler.submit(_source("a.png")).result(timeout=5)

    # 25% 的回退消息被忽略，不会把步骤拉回 extract
    assert "extract" not in seen
