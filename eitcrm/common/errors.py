"""Caller-facing errors shared by the delivery and linking services.

Route handlers map these to HTTP status codes. Per-recipient delivery failures
and per-update webhook failures are never raised; they are returned as data.
"""


class DispatchInputError(ValueError):
    """A required dispatch field is missing or blank."""


class StudentNotFoundError(LookupError):
    """The referenced student does not exist."""


class InviteCodeExhaustedError(RuntimeError):
    """Every generated invite code collided with an existing one."""
