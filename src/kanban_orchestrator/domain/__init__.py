from .models import Column, ExecutorEvent, HookBinding, HookRun, MessageQueueEntry, Placement, Task
from .position import PositionKey

__all__ = [
    "Task",
    "Column",
    "HookBinding",
    "HookRun",
    "MessageQueueEntry",
    "ExecutorEvent",
    "Placement",
    "PositionKey",
]
