"""Exceptions raised by the kiosk remote control server."""


class KioskError(Exception):
    """Base class for every error this package raises on purpose."""


class BrowserUnavailableError(KioskError):
    """No browser or page could be made available."""


class CDPError(KioskError, RuntimeError):
    """A DevTools command failed or the connection is gone."""


class PageEvaluationError(KioskError):
    """Script text threw (or failed to parse) inside the page."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class BindingExistsError(KioskError):
    """A page binding with this name is already exposed."""


class ScriptSetupError(KioskError):
    """A continuous script could not be started; nothing was registered."""
