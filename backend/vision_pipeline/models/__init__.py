from .entities import ErrorStage, JobStatus, VisionJob, VisionJobOutput, VisionJobSession

__all__ = [
    "ErrorStage",
    "JobStatus",
    "VisionJob",
    "VisionJobOutput",
    "VisionJobSession",
]
