class TrackerError(Exception):
    """Base exception for tracker operations"""
    status_code = 400


class NotFoundError(TrackerError):
    """Raised when a referenced row does not exist"""
    status_code = 404


class ValidationError(TrackerError):
    """Raised when input is missing or out of range"""
    status_code = 400


class InsufficientStockError(TrackerError):
    """Raised when trying to sell or cut more than available"""
    status_code = 400


class ConflictError(TrackerError):
    """Raised when operation is not allowed in current state"""
    status_code = 409
