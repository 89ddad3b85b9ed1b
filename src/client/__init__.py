"""Client side - editing session lock managers and the lock API client."""

from .api import LockApiClient
from .manager import TRANSITIONS, LockBackend, ModuleLockManager, SessionState
from .versions import ModuleVersionHistory

__all__ = [
    "LockApiClient",
    "LockBackend",
    "ModuleLockManager",
    "ModuleVersionHistory",
    "SessionState",
    "TRANSITIONS",
]
