from . import callbacks, progress, queue, tasks

__all__ = ["callbacks", "progress", "queue", "tasks"]
