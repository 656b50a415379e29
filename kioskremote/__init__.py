"""Remote control server for a kiosk browser."""

from kioskremote.channel import ResultChannel
from kioskremote.exceptions import (
    BindingExistsError,
    BrowserUnavailableError,
    CDPError,
    KioskError,
    PageEvaluationError,
    ScriptSetupError,
)
from kioskremote.executor import ScriptExecutor
from kioskremote.registry import ScriptExecution, ScriptRegistry

__version__ = "0.1.0"

__all__ = [
    "BindingExistsError",
    "BrowserUnavailableError",
    "CDPError",
    "KioskError",
    "PageEvaluationError",
    "ResultChannel",
    "ScriptExecution",
    "ScriptExecutor",
    "ScriptRegistry",
    "ScriptSetupError",
]
