"""
Returns Module - Exceptions

Raised by the transition engine and the refund trigger. Admin views turn them
into HTTP errors; webhook handlers log them and still answer 200.
"""


class ReturnsError(Exception):
    """Base class for errors raised by the returns workflow."""


class PreconditionError(ReturnsError):
    """An action was requested while the return is in the wrong status."""

    def __init__(self, expected, actual, message=None):
        self.expected = list(expected)
        self.actual = actual
        if message is None:
            message = f"Expected status {' or '.join(self.expected)}, current status is {actual}"
        super().__init__(message)


class InvalidTransitionError(ReturnsError):
    """The requested status is not a successor of the current one."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move return from {current} to {target}")


class ConcurrentTransitionError(ReturnsError):
    """The status changed underneath us between read and write."""

    def __init__(self, return_number, expected_status):
        self.return_number = return_number
        self.expected_status = expected_status
        super().__init__(
            f"Return {return_number} is no longer in status {expected_status}; "
            f"it was changed by another request"
        )


class RefundProcessingError(ReturnsError):
    """The refund could not be issued (validation failure or gateway error)."""


class InvalidActionPayload(ReturnsError):
    """An admin action was allowed but its payload cannot be applied."""
