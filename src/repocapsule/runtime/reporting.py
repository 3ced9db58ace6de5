"""
Status reporting for the Capsule runtime.

Every component that talks to the user does it through a Reporter, so the
same engine can print plain prefixed lines when running inside a generated
artifact and rich console output when driven from the repocapsule CLI.

Why ABC over Protocol?
    - Subclasses get the shared `verbose` handling for free
    - Forgetting a method fails loudly at instantiation time
"""

import sys
from abc import ABC, abstractmethod
from typing import TextIO


class Reporter(ABC):
    """
    Abstract sink for user-facing status messages.

    Attributes:
        verbose: Whether debug messages are shown
    """

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    @abstractmethod
    def info(self, message: str) -> None:
        """Report normal progress."""

    @abstractmethod
    def success(self, message: str) -> None:
        """Report a completed step."""

    @abstractmethod
    def warn(self, message: str) -> None:
        """Report a recoverable problem."""

    @abstractmethod
    def error(self, message: str) -> None:
        """Report a failure."""

    @abstractmethod
    def line(self, text: str) -> None:
        """Emit raw output (dump bodies, diff hunks) without decoration."""

    @abstractmethod
    def _emit_debug(self, message: str) -> None:
        """Write a debug message unconditionally."""

    def debug(self, message: str) -> None:
        """Report a detail shown only in verbose mode."""
        if self.verbose:
            self._emit_debug(message)


class StreamReporter(Reporter):
    """
    Reporter that writes prefixed plain-text lines.

    Warnings and errors go to the error stream, everything else to the
    output stream.
    """

    def __init__(
        self,
        verbose: bool = False,
        out: TextIO | None = None,
        err: TextIO | None = None,
    ) -> None:
        super().__init__(verbose)
        self._out = out
        self._err = err

    @property
    def out(self) -> TextIO:
        return self._out if self._out is not None else sys.stdout

    @property
    def err(self) -> TextIO:
        return self._err if self._err is not None else sys.stderr

    def info(self, message: str) -> None:
        print(f"[INFO] {message}", file=self.out)

    def success(self, message: str) -> None:
        print(f"[ OK ] {message}", file=self.out)

    def warn(self, message: str) -> None:
        print(f"[WARN] {message}", file=self.err)

    def error(self, message: str) -> None:
        print(f"[ERROR] {message}", file=self.err)

    def line(self, text: str) -> None:
        print(text, file=self.out)

    def _emit_debug(self, message: str) -> None:
        print(f"[DEBUG] {message}", file=self.err)
