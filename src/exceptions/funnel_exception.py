from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from models.validation_data import Violation


class FunnelException(Exception):
    """
    This is the base exception for all funnel exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

class FunnelDBException(FunnelException):
    """
    This is the exception for all funnel database exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message=message, status_code=status_code)

class FunnelServiceException(FunnelException):
    """
    This is the exception for all funnel service exceptions
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=500)

class FunnelNotFoundException(FunnelException):
    """
    This is the exception when funnel is not found
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=404)

class FunnelValidationException(FunnelException):
    """
    This is the exception for funnel validation errors.
    Carries the violation list so the editor can render it.
    """
    def __init__(self, message: str, violations: Optional[List["Violation"]] = None):
        self.violations = violations or []
        super().__init__(message=message, status_code=400)

class FunnelLockedException(FunnelException):
    """
    Raised when another editor holds the funnel's edit lock
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=409)

class RunNotFoundException(FunnelException):
    """
    This is the exception when a funnel run is not found
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=404)

class RunLockedException(FunnelException):
    """
    Raised when a step is already in flight for the run.
    Callers retry later, the request is never queued.
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=409)
