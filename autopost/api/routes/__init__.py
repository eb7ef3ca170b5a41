from . import orchestration

__all__ = ["orchestration"]
