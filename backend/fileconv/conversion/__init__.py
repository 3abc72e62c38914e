from .models import Category, ConversionFailure, ConversionRequest, ConversionResult, FailureKind, TaskRecord, TaskStatus
from .scheduler import TaskScheduler, get_task_scheduler
from .store import TaskStore
from .tools import ToolAvailabilityProbe, get_tool_probe

__all__ = [
    "Category",
    "ConversionFailure",
    "ConversionRequest",
    "ConversionResult",
    "FailureKind",
    "TaskRecord",
    "TaskScheduler",
    "TaskStatus",
    "TaskStore",
    "ToolAvailabilityProbe",
    "get_task_scheduler",
    "get_tool_probe",
]
