"""Error taxonomy for the proposal pipeline.

Per-document problems are reported as diagnostics; the exceptions here are
raised only where a whole run (or a single document's downstream stages)
cannot continue.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from propsite.model import DiagnosticReport


class PropsiteError(Exception):
    """Base class for every error raised by propsite."""


class ConfigError(PropsiteError):
    pass


class DiscoveryError(PropsiteError):
    def __init__(self, message: str, *, path: Path | None = None):
        super().__init__(message)
        self.path = path


class CitationError(PropsiteError):
    def __init__(self, message: str, *, key: str | None = None):
        super().__init__(message)
        self.key = key


class TransformError(PropsiteError):
    def __init__(self, message: str, *, number: int | None = None):
        super().__init__(message)
        self.number = number


class CacheConsistencyError(PropsiteError):
    pass


class LockError(PropsiteError):
    def __init__(self, message: str, *, path: Path, owner: str = ""):
        super().__init__(message)
        self.path = path
        self.owner = owner


class RendererError(PropsiteError):
    """The renderer failed; ``report`` holds the diagnostics of the run it ended, if any."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.report: DiagnosticReport | None = None

    def __str__(self) -> str:
        text = super().__str__()
        captured = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        if captured:
            return f"{text}\n{captured}"
        return text


class HistoryError(PropsiteError):
    pass
