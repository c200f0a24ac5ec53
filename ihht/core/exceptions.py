"""
Custom exception hierarchy for the IHHT session engine.

All application exceptions inherit from IHHTEngineError.

Only InvalidConfigError and the SessionError family are raised to callers of
the session controller. The remaining errors are recoverable: they are
raised inside the engine, logged, and converted into graceful degradation
(auto-pause, retry on next write, discarded snapshot, default altitude).
"""


class IHHTEngineError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(IHHTEngineError):
    """Invalid or missing application configuration."""

    pass


class InvalidConfigError(IHHTEngineError):
    """Session configuration rejected at start (non-positive durations or cycles)."""

    pass


# =============================================================================
# Session Errors
# =============================================================================


class SessionError(IHHTEngineError):
    """Session-related error."""

    pass


class SessionAlreadyActiveError(SessionError):
    """A session was started while another one is still active.

    The running session is left untouched.
    """

    pass


class NoActiveSessionError(SessionError):
    """Operation requires an active session but none is running."""

    pass


# =============================================================================
# Sensor Errors
# =============================================================================


class SensorDisconnectedError(IHHTEngineError):
    """Pulse oximeter feed reported a disconnect.

    Recoverable: the controller pauses the session and waits for resume.
    """

    pass


# =============================================================================
# Persistence Errors
# =============================================================================


class PersistenceError(IHHTEngineError):
    """Base for persistence collaborator errors."""

    pass


class PersistenceWriteError(PersistenceError):
    """A snapshot, reading batch or summary write failed.

    Logged and retried on the next write opportunity. Never aborts a session.
    """

    pass


class RecoveryDataCorruptOrStaleError(PersistenceError):
    """Stored recovery snapshot is unparseable, outdated or expired."""

    pass


# =============================================================================
# Progression Errors
# =============================================================================


class ProgressionCalculationError(IHHTEngineError):
    """Session history could not be turned into a recommendation.

    The progression engine falls back to the default altitude level.
    """

    pass
