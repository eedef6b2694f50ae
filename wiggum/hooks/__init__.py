"""Transition hooks: resolution, synchronous pre-hooks, background post-hooks."""

from wiggum.hooks.background import BackgroundTasks, TaskFailure
from wiggum.hooks.dispatcher import HookDispatcher, HookContext, HookResult, DEFAULT_HOOKS_DIR

__all__ = [
    "BackgroundTasks",
    "TaskFailure",
    "HookDispatcher",
    "HookContext",
    "HookResult",
    "DEFAULT_HOOKS_DIR",
]
