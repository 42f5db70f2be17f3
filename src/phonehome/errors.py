"""Exception hierarchy shared by the capture, session and CLI layers."""

from __future__ import annotations


class PhoneHomeError(Exception):
    """Base class for all phonehome errors."""


class ConfigError(PhoneHomeError, ValueError):
    """Invalid combination of run options."""


class UnsupportedPlatformError(PhoneHomeError):
    """No socket sampler is available on this host."""


class SpawnError(PhoneHomeError):
    """The target command could not be started."""


class SamplingError(PhoneHomeError):
    """A single socket snapshot could not be taken.

    Recoverable: the loop treats the tick as having zero sockets.
    """


class SamplingFatalError(PhoneHomeError):
    """Sampling failed too many ticks in a row; the process is unobservable."""

    def __init__(self, failures: int, last_error: BaseException | None = None) -> None:
        self.failures = failures
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(
            f"Socket sampling failed {failures} times in a row{detail}"
        )

    @property
    def hint(self) -> str:
        return "Retry with elevated privileges (e.g. sudo) so process sockets are readable."


class TerminationError(PhoneHomeError):
    """The monitored process could not be terminated."""
