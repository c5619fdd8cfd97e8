"""quorumlock exception classes."""

class QuorumLockError(Exception):
    """Base exception for all quorumlock errors."""
    pass


class ValidationError(QuorumLockError):
    """Raised when input validation fails."""
    pass


class UndeterminableResourceKey(ValidationError):
    """Raised when no resource key can be derived for a unit of work."""
    pass


class InstanceUnreachable(QuorumLockError):
    """Raised by a store instance when the backend cannot be reached."""

    def __init__(self, message: str, instance=None):
        super().__init__(message)
        self.instance = instance


class LockError(QuorumLockError):
    """Raised when lease operations fail."""
    pass


class LeaseLost(LockError):
    """Raised when a held lease could not be refreshed."""

    def __init__(self, message: str, resource: str = None):
        super().__init__(message)
        self.resource = resource
