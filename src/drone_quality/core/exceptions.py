"""项目内使用的自定义异常定义。"""


class DroneQualityError(Exception):
    """基础异常类型。"""


class ConfigurationError(DroneQualityError):
    """权重表、阈值等配置不合法时抛出。"""


class DecodeError(DroneQualityError):
    """图像字节无法解码或尺寸退化，对单张图片是致命错误。"""


class AnalysisError(DroneQualityError):
    """单个指标阶段失败，其余独立阶段继续执行。"""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class GPUUnavailableError(DroneQualityError):
    """GPU 上下文不可用或执行失败，由调度器静默回退到 CPU。"""


class WorkerCrashError(DroneQualityError):
    """工作线程出现未捕获故障，仅该线程持有的任务失败。"""


class TaskCancelledError(DroneQualityError):
    """任务在 clear_queue() 时被取消。"""
