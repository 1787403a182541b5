"""Node runtime backends: local processes and kubernetes pods."""

from tmpnet.runtime.base import NodeRuntime, new_runtime

__all__ = ["NodeRuntime", "new_runtime"]
