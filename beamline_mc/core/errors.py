"""Exceptions raised by the engine."""

from typing import Optional


class ConfigurationError(ValueError):
    """Invalid component or instrument configuration (fatal at initialize)."""

    def __init__(self, message: str, instance: Optional[str] = None):
        self.instance = instance
        if instance is not None:
            message = f"[{instance}] {message}"
        super().__init__(message)


class RunAbortedError(RuntimeError):
    """A node failed to initialize; the whole run is aborted."""

    def __init__(self, instance: str, reason: str):
        self.instance = instance
        super().__init__(f"Run aborted: component '{instance}' failed to initialize: {reason}")


class ParseError(ValueError):
    """Malformed tabulated data file."""

    def __init__(self, message: str, path=None, line: Optional[int] = None):
        self.path = path
        self.line = line
        where = ""
        if path is not None:
            where = f"{path}"
            if line is not None:
                where += f":{line}"
            where += ": "
        super().__init__(where + message)


class LifecycleError(RuntimeError):
    """A lifecycle phase was invoked out of order."""
