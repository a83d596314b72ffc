"""进度更新的数据模型。"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class ProcessingStep(str, Enum):
    UPLOAD = "upload"
    EXTRACT = "extract"
    PROCESS = "process"
    ANALYZE = "analyze"
    EXPORT = "export"


STAGE_STEPS = {
    "decode": ProcessingStep.EXTRACT,
    "metadata": ProcessingStep.EXTRACT,
    "blur": ProcessingStep.PROCESS,
    "exposure": ProcessingStep.PROCESS,
    "noise": ProcessingStep.PROCESS,
    "features": ProcessingStep.PROCESS,
    "scoring": ProcessingStep.ANALYZE,
    "done": ProcessingStep.EXPORT,
}


def step_for_stage(stage: str) -> ProcessingStep:
    return STAGE_STEPS.get(stage, ProcessingStep.PROCESS)


@dataclass(slots=True)
class ProcessingProgress:
    """批处理的整体进度，仅由调度器修改，对外提供副本。"""

    current: int = 0
    total: int = 0
    is_processing: bool = False
    start_time: Optional[float] = None
    current_step: ProcessingStep = ProcessingStep.UPLOAD
    current_image_name: Optional[str] = None

    def copy(self) -> "ProcessingProgress":
        return replace(self)
