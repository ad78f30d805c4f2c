from .base import TaskSource

__all__ = ["TaskSource"]
