class LumiError(Exception):
    """Base class for all engine errors."""

    pass


class ElementNotFoundError(LumiError):
    """Raised when a selector resolves no element within its timeout."""

    pass


class BridgeError(LumiError):
    """Raised when a platform bridge subprocess fails or returns unparsable output."""

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr


class WaitTimeoutError(LumiError):
    """Raised when a wait budget elapses."""

    pass


class AssertionFailure(LumiError):
    """Raised when an assertion command evaluates to false."""

    pass


class FlowConfigError(LumiError):
    """Raised for parse errors and missing required parameters."""

    pass


class ScriptError(LumiError):
    """Raised when an embedded script or shell script fails."""

    pass


class NotSupportedError(LumiError):
    """Raised when a driver does not implement an operation."""

    pass


class FlowFailedError(LumiError):
    """Raised when a flow finishes in the failed state."""

    pass


class SoftAssertionFailure(AssertionFailure):
    """Raised for a failed `soft` assertion; the flow records it and keeps going."""

    pass


class SkipCommand(LumiError):
    """Raised by a command handler that decided not to run."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
