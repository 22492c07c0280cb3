"""
Exceptions for caller-discipline violations.

Everything a C source can get wrong is reported as a Diagnostic; these are
raised only when the engine itself is misused.
"""

from typing import Optional


class MacroEngineError(Exception):
    """Base class for engine misuse."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        return self.message


class SnapshotNotBuiltError(MacroEngineError):
    """A query was made without an analysed snapshot."""

    def __init__(self, message: str = "No analysis snapshot has been built"):
        super().__init__(message)


class UnknownMacroError(MacroEngineError, KeyError):
    """Expansion was requested for a name absent from the frozen table."""

    def __init__(self, name: str):
        super().__init__(f"Macro '{name}' is not defined in this snapshot", {"name": name})
        self.name = name

    def __str__(self):
        return self.message


class InvalidInvocationError(MacroEngineError):
    """Invocation text does not start with the requested macro name."""

    def __init__(self, name: str, text: str):
        super().__init__(
            f"Invocation text does not invoke '{name}': {text!r}",
            {"name": name, "text": text},
        )
