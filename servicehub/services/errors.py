"""
Servicing domain errors.

Services raise these; main.py maps them to HTTP responses. Database errors are
not wrapped and reach the caller as raised by SQLAlchemy.
"""


class SchedulingError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(SchedulingError):
    """Malformed input such as an unparseable date or a missing contract field."""
    status_code = 400


class NotFoundError(SchedulingError):
    status_code = 404
