"""
Custom exception hierarchy for the operator console.

Hierarchy:

    ConsoleError (base)
    ├── CommandError           aborts only the current command
    │   ├── ParseError         malformed command text
    │   ├── ValidationError    missing actor, bad index, bad argument shape
    │   ├── AssertionFailure   an ASSERT comparison did not hold
    │   └── RemoteError        the remote system could not serve the call
    │       ├── TransientNetworkError   retried by the gateway
    │       └── RemoteRevertError       rejected by the remote system, never retried
    └── FatalError             propagates out of the REPL and the batch runner
        ├── ShutdownError            gateway closed while waiting for a slot
        └── RemoteUnavailableError   remote endpoint unreachable after health wait

Rules:
    - CommandError: catch, log, record a failed CommandResult, continue.
    - FatalError: let it propagate, the CLI exits non-zero.
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""
from typing import Optional


class ConsoleError(Exception):
    """Base exception for all console errors."""
    pass


# ============ COMMAND (abort this command only) ============

class CommandError(ConsoleError):
    """Error scoped to a single command."""
    pass


class ParseError(CommandError):
    """Raised when command text cannot be tokenized or parsed."""

    def __init__(self, message: str, text: Optional[str] = None):
        super().__init__(message)
        self.text = text


class ValidationError(CommandError):
    """Raised when a parsed command cannot run (no actor, index out of range, bad amount)."""
    pass


class AssertionFailure(CommandError):
    """Raised when an ASSERT comparison fails.

    Carries both sides as fixed-point integers together with their scale so
    callers can render them without losing precision.
    """

    def __init__(self, target: str, op: str, expected: int, actual: int, decimals: int):
        self.target = target
        self.op = op
        self.expected = expected
        self.actual = actual
        self.decimals = decimals
        from perpconsole.utils.fixed_point import format_fixed

        super().__init__(
            f"ASSERT {target} {op} {format_fixed(expected, decimals)} failed: "
            f"actual {format_fixed(actual, decimals)}"
        )


class RemoteError(CommandError):
    """The remote system could not serve a call (malformed response, unexpected status)."""
    pass


class TransientNetworkError(RemoteError):
    """Connection reset, timeout, refused connection or generic network error.

    Treatment: retried by the gateway up to the attempt cap, then re-raised as is.
    """
    pass


class RemoteRevertError(RemoteError):
    """The remote system rejected the call. Never retried."""

    def __init__(self, message: str, code: Optional[int] = None, data: Optional[object] = None):
        super().__init__(message)
        self.code = code
        self.data = data


# ============ FATAL (propagate) ============

class FatalError(ConsoleError):
    """Unrecoverable error. Propagates out of the REPL and the batch runner."""
    pass


class ShutdownError(FatalError):
    """Raised to callers waiting on a concurrency slot when the gateway shuts down."""
    pass


class RemoteUnavailableError(FatalError):
    """Raised when the remote endpoint does not become healthy before the timeout."""
    pass
