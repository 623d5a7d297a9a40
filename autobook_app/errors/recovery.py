"""
Recovery strategy classifications for error handling.

These mixins categorize errors by their recovery characteristics and
drive the retry eligibility of failed booking attempts.
"""


class RecoverableError(Exception):
    """Mixin for errors that can be recovered from by another attempt."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message)
        self.recoverable = True


class UnrecoverableError(Exception):
    """Mixin for errors that end a session without further attempts."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message)
        self.recoverable = False
