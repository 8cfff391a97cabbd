"""
Error taxonomy of the reservation engine.

ValidationError  - bad input shape or range, shown inline
ConflictError    - requested dates overlap an existing reservation
StateError       - illegal lifecycle transition (a UI bug, surfaced generically)
NetworkError     - transport/backend failure, triggers rollback and retry affordance
"""
from typing import Optional, Sequence


class ReservationEngineError(Exception):
    """Base class for every error raised by the engine"""


class ValidationError(ReservationEngineError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def __eq__(self, other):
        if not isinstance(other, ValidationError):
            return NotImplemented
        return (self.message, self.field) == (other.message, other.field)

    def __hash__(self):
        return hash((self.message, self.field))


class ConflictError(ReservationEngineError):
    def __init__(self, message: str, conflicting: Sequence = ()):
        super().__init__(message)
        self.conflicting = list(conflicting)


class StateError(ReservationEngineError):
    def __init__(self, message: str, current=None, target=None):
        super().__init__(message)
        self.current = current
        self.target = target


class NetworkError(ReservationEngineError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
