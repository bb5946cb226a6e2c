from .guardian import ChangeGuard, WriteBlocked

__all__ = ["ChangeGuard", "WriteBlocked"]
