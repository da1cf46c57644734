"""
Error taxonomy for branching operations.

Every error is terminal for the calling operation: the service rolls back its
transaction before the exception leaves it, so the message tree is unchanged.
"""


class BranchingError(Exception):
    """Base class for errors raised by the chat services."""
    
    status_code = 500
    
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(BranchingError):
    """A referenced message, parent or conversation does not exist."""
    
    status_code = 404


class AccessDeniedError(BranchingError):
    """The caller has no permission on the owning conversation."""
    
    status_code = 403


class UnauthenticatedError(BranchingError):
    """No caller identity was supplied."""
    
    status_code = 401
    
    def __init__(self, detail: str = "Unauthenticated") -> None:
        super().__init__(detail)


class InvalidOperationError(BranchingError):
    """The operation does not apply to this message (e.g. editing an assistant reply)."""
    
    status_code = 400
