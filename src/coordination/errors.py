"""Lock layer exceptions.

Conflicts are not exceptions: a rejected acquire is an ``AcquireResult`` with
``success=False`` and a lost lease is a ``False`` refresh.
"""


class LockError(Exception):
    """Base class for lock layer failures."""


class UnknownModuleError(LockError):
    """The module key is not one of the configured lockable modules."""

    def __init__(self, module_key: str):
        super().__init__(f"Module {module_key!r} is not lockable")
        self.module_key = module_key


class ReadOnlyModuleError(LockError):
    """The requester tried to write a module someone else is editing."""

    def __init__(self, module: str, locked_by: str | None = None):
        super().__init__(f"Module {module} is locked by {locked_by}")
        self.module = module
        self.locked_by = locked_by


class LockBackendError(LockError):
    """The store or the lock API could not be reached."""


class LockStoreError(LockBackendError):
    """The lock store failed or kept losing optimistic write races."""
