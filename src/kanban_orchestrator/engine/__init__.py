from .executor import DeferredExecutor, Executor, ExecutorRequest
from .gate import ConcurrencyGate
from .hooks import HookBackend, HookPipelineRunner, HookQueue, PipelineOutcome, SubprocessHookBackend
from .lifecycle import TaskLifecycle
from .scheduler import Scheduler, create_scheduler

__all__ = [
    "ConcurrencyGate",
    "DeferredExecutor",
    "Executor",
    "ExecutorRequest",
    "HookBackend",
    "HookPipelineRunner",
    "HookQueue",
    "PipelineOutcome",
    "Scheduler",
    "SubprocessHookBackend",
    "TaskLifecycle",
    "create_scheduler",
]
