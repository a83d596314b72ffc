"""处理流水线：把一批图片交给调度器并收集全部结果。"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.core.config import AnalysisConfig
from drone_quality.core.models import BatchResult, ImageAnalysis, SourceImage
from drone_quality.core.progress import ProcessingProgress
from drone_quality.processing.scheduler import TaskScheduler

LOGGER = logging.getLogger(__name__)


ProgressCallback = Optional[Callable[[ProcessingProgress], None]]


def process_batch(
    sources: Sequence[SourceImage],
    config: Optional[AnalysisConfig] = None,
    progress_callback: ProgressCallback = None,
    dispatcher: Optional[ComputeDispatcher] = None,
) -> BatchResult:
    """批量分析入口，结果按提交顺序返回。

    被拒绝的任务（工作线程崩溃、意外异常）转换为只带错误信息的分析记录。
    """

    config = config or AnalysisConfig()
    total = len(sources)
    LOGGER.info("开始分析 %d 张图片", total)
    if total == 0:
        return BatchResult(analyses=[])

    analyses: list[ImageAnalysis] = []
    with TaskScheduler(config, dispatcher=dispatcher, on_progress=progress_callback) as scheduler:
        handles = scheduler.submit_batch(sources)
        for source, handle in zip(sources, handles):
            try:
                analyses.append(handle.result())
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("任务执行异常 %s: %s", source.name, exc)
                analyses.append(
                    ImageAnalysis(
                        id=handle.task_id,
                        name=source.name,
                        size=source.size,
                        source=source.path,
                        error=str(exc) or type(exc).__name__,
                    )
                )

    result = BatchResult(analyses=analyses)
    LOGGER.info("分析完成：成功 %d 张，失败 %d 张", len(result.succeeded), len(result.failed))
    return result
