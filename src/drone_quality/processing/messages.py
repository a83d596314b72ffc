"""调度器与工作线程之间传递的消息。

每个任务的消息序列：一个 AnalyzeRequest，零或多个 ProgressMessage
（百分比单调不减），最后恰好一个 DoneMessage 或 ErrorMessage。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Union

from drone_quality.core.config import SceneType, UseCase
from drone_quality.core.models import ImageAnalysis, SourceImage


@dataclass(frozen=True, slots=True)
class AnalyzeRequest:
    task_id: str
    source: SourceImage
    use_case: UseCase = UseCase.GENERAL
    scene_type: SceneType = SceneType.MIXED
    generation: int = 0


@dataclass(frozen=True, slots=True)
class ProgressMessage:
    task_id: str
    percent: int
    stage: str
    image_name: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DoneMessage:
    task_id: str
    analysis: ImageAnalysis


@dataclass(frozen=True, slots=True)
class ErrorMessage:
    task_id: str
    error: str
    exception: Optional[BaseException] = None


@dataclass(frozen=True, slots=True)
class WorkerFaultMessage:
    """工作线程崩溃，task_id 为其崩溃时持有的任务。"""

    worker_id: int
    task_id: Optional[str]
    error: str


WorkerMessage = Union[ProgressMessage, DoneMessage, ErrorMessage, WorkerFaultMessage]
Emit = Callable[[WorkerMessage], None]
