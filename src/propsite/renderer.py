"""Invocation of the external static-site renderer (``zola`` by default)."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from propsite.config import RendererConfig, version_tuple
from propsite.errors import ConfigError, RendererError

logger = logging.getLogger(__name__)

RunFn = Callable[..., "subprocess.CompletedProcess[str]"]


@dataclass(frozen=True)
class ServeHandoff:
    """Everything needed to start the preview server over a built site."""

    command: tuple[str, ...]
    cwd: Path
    output_dir: Path


def _format_version(version: Sequence[int]) -> str:
    return ".".join(str(part) for part in version)


def log_renderer_output(text: str) -> None:
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("Warning: "):
            logger.warning("%s", line[len("Warning: ") :])
        elif line.startswith("Error: "):
            logger.error("%s", line[len("Error: ") :])
        else:
            logger.info("%s", line)


class Renderer:
    def __init__(self, config: RendererConfig, *, run_fn: RunFn = subprocess.run):
        self.config = config
        self._run = run_fn

    def _invoke(self, args: Sequence[str], *, cwd: Path | None = None) -> "subprocess.CompletedProcess[str]":
        command = [*self.config.command, *args]
        logger.debug("running %s", " ".join(command))
        try:
            return self._run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            required = _format_version(self.config.minimum_version)
            raise RendererError(
                f"could not find `{self.config.command[0]}` (requires at least version {required})"
            ) from exc
        except OSError as exc:
            raise RendererError(f"could not run `{self.config.command[0]}`: {exc}") from exc

    def version(self) -> tuple[int, ...]:
        completed = self._invoke(["--version"])
        if completed.returncode != 0:
            raise RendererError(
                f"`{self.config.command[0]} --version` failed",
                returncode=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
            )
        text = (completed.stdout or "").strip()
        words = text.split()
        try:
            return version_tuple(words[-1] if words else "")
        except ConfigError as exc:
            raise RendererError(f"unexpected version output `{text}`") from exc

    def ensure_available(self) -> tuple[int, ...]:
        found = self.version()
        if found < tuple(self.config.minimum_version):
            raise RendererError(
                f"installed {self.config.command[0]} is too old "
                f"(requires at least {_format_version(self.config.minimum_version)}, "
                f"got {_format_version(found)})"
            )
        return found

    def _config_args(self) -> list[str]:
        return ["-c", str(self.config.config)] if self.config.config is not None else []

    def build(self, site_dir: Path, output_dir: Path, *, base_url: str | None = None) -> None:
        """Run the renderer over ``site_dir``; non-zero exit raises ``RendererError``."""
        self.ensure_available()
        logger.info("invoking %s", self.config.command[0])
        args = [*self._config_args(), "build", "--drafts", "--force", "-o", str(output_dir)]
        if base_url:
            args.extend(["-u", base_url])
        completed = self._invoke(args, cwd=site_dir)
        log_renderer_output(completed.stdout or "")
        log_renderer_output(completed.stderr or "")
        if completed.returncode != 0:
            raise RendererError(
                f"{self.config.command[0]} exited with status {completed.returncode}",
                returncode=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
            )

    def serve_handoff(self, site_dir: Path, output_dir: Path) -> ServeHandoff:
        command = (
            *self.config.command,
            *self._config_args(),
            "serve",
            "--drafts",
            "--force",
            "-o",
            str(output_dir),
        )
        return ServeHandoff(command=command, cwd=site_dir, output_dir=output_dir)

    def serve(self, handoff: ServeHandoff) -> int:
        """Run the preview server in the foreground; returns its exit status."""
        logger.warning("live reloading is not implemented; rebuild to see changes")
        try:
            completed = self._run(list(handoff.command), cwd=str(handoff.cwd), check=False)
        except OSError as exc:
            raise RendererError(f"could not run `{handoff.command[0]}`: {exc}") from exc
        return completed.returncode
