"""Exceptions raised by the Oracle."""


class OracleError(Exception):
    """Base class for Oracle errors."""


class InvalidInterventionError(OracleError, ValueError):
    """Raised when an intervention cannot be used for the requested operation."""

    def __init__(self, intervention_type: str):
        self.intervention_type = intervention_type
        super().__init__(
            f"Cannot create takeover session from intervention type: {intervention_type}"
        )


class SessionNotFoundError(OracleError, KeyError):
    """Raised when a takeover session ID is unknown."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(session_id)

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


class StoreLockError(OracleError):
    """Raised when the store lock cannot be acquired within the retry budget."""
