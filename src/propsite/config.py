from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from pathlib import Path
from typing import Mapping, TypeAlias
from urllib.parse import urlsplit

from propsite.errors import ConfigError

DEFAULT_CONFIG_NAME = "propsite.toml"

WORKERS_ENV = "PROPSITE_WORKERS"
LOCK_WAIT_ENV = "PROPSITE_LOCK_WAIT"
LOG_LEVEL_ENV = "PROPSITE_LOG_LEVEL"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]

_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"unable to read configuration `{path}`: {exc}") from exc
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid configuration `{path}`: {exc}") from exc
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def _section(data: TomlTable, name: str) -> TomlTable:
    section = data.get(name, {})
    return section if isinstance(section, dict) else {}


def _normalize_name_list(value: TomlValue) -> list[str]:
    items: list[str] = []
    if value is None:
        return items
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            if isinstance(item, str):
                items.extend([part.strip() for part in item.split(",") if part.strip()])
    return [item for item in items if item]


def _as_bool(value: TomlValue) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY_VALUES
    return False


def _as_int(value: TomlValue, *, name: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"`{name}` must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ConfigError(f"`{name}` must be an integer, got `{value}`") from exc
    raise ConfigError(f"`{name}` must be an integer")


def _as_float(value: TomlValue, *, name: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"`{name}` must be a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ConfigError(f"`{name}` must be a number, got `{value}`") from exc
    raise ConfigError(f"`{name}` must be a number")


def _as_str(value: TomlValue, *, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _as_command(value: TomlValue, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if isinstance(value, str) and value.strip():
        return tuple(value.split())
    if isinstance(value, list) and value and all(isinstance(item, str) for item in value):
        return tuple(str(item) for item in value)
    return default


def env_text(name: str, *, default: str = "", environ: Mapping[str, str] | None = None) -> str:
    source = os.environ if environ is None else environ
    return source.get(name, default).strip()


def version_tuple(text: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in text.strip().split("."):
        digits = "".join(ch for ch in piece if ch.isascii() and ch.isdigit())
        if not digits:
            break
        parts.append(int(digits))
    if not parts:
        raise ConfigError(f"invalid version `{text}`")
    return tuple(parts)


@dataclass(frozen=True)
class SiteConfig:
    base_url: str = "https://eips.ethereum.org/"
    template: str = "proposal.html"
    title: str = "Proposals"
    aliases: tuple[str, ...] = ("EIPS/eip-{number}", "ERCS/erc-{number}")
    asset_aliases: tuple[str, ...] = ("assets/eip-{number}", "assets/erc-{number}")
    theme: Path | None = None

    @property
    def base_path(self) -> str:
        path = urlsplit(self.base_url).path or "/"
        if not path.startswith("/"):
            path = "/" + path
        if not path.endswith("/"):
            path += "/"
        return path


@dataclass(frozen=True)
class RendererConfig:
    command: tuple[str, ...] = ("zola",)
    config: Path | None = None
    minimum_version: tuple[int, ...] = (0, 19, 2)


@dataclass(frozen=True)
class BibliographyConfig:
    path: Path = Path("bibliography.json")
    style: str = "harvard-cite-them-right"
    required: bool = False


@dataclass(frozen=True)
class LintConfig:
    allow: tuple[str, ...] = ()
    warn: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()


@dataclass(frozen=True)
class BuildConfig:
    """Resolved settings for one run, owned by the orchestrator."""

    content_dir: str = "content"
    build_dir: str = "build"
    workers: int = 4
    lock_wait: float = 0.0
    history_revision: str = "HEAD"
    upstream: str | None = None
    site: SiteConfig = field(default_factory=SiteConfig)
    renderer: RendererConfig = field(default_factory=RendererConfig)
    bibliography: BibliographyConfig = field(default_factory=BibliographyConfig)
    lint: LintConfig = field(default_factory=LintConfig)

    def __post_init__(self) -> None:
        if self.workers <= 0:
            raise ConfigError(f"`build.workers` must be positive, got {self.workers}")
        if self.lock_wait < 0:
            raise ConfigError(f"`build.lock_wait` must not be negative, got {self.lock_wait}")
        if Path(self.content_dir).is_absolute() or Path(self.build_dir).is_absolute():
            raise ConfigError("`repository.content_dir` and `repository.build_dir` must be relative")

    def content_path(self, root: Path) -> Path:
        return root / self.content_dir

    def build_path(self, root: Path) -> Path:
        return root / self.build_dir

    def bibliography_path(self, root: Path) -> Path:
        path = self.bibliography.path
        return path if path.is_absolute() else root / path

    def settings_payload(self) -> dict[str, object]:
        """Settings that change rendered artifacts; part of the cache key."""
        return {
            "base_url": self.site.base_url,
            "template": self.site.template,
            "title": self.site.title,
            "aliases": list(self.site.aliases),
            "asset_aliases": list(self.site.asset_aliases),
            "style": self.bibliography.style,
        }

    @classmethod
    def from_table(
        cls,
        data: TomlTable,
        *,
        root: Path,
        environ: Mapping[str, str] | None = None,
    ) -> "BuildConfig":
        repository = _section(data, "repository")
        site = _section(data, "site")
        renderer = _section(data, "renderer")
        bibliography = _section(data, "bibliography")
        lint = _section(data, "lint")
        build = _section(data, "build")

        workers = _as_int(build.get("workers"), name="build.workers", default=4)
        env_workers = env_text(WORKERS_ENV, environ=environ)
        if env_workers:
            workers = _as_int(env_workers, name=WORKERS_ENV, default=workers)
        lock_wait = _as_float(build.get("lock_wait"), name="build.lock_wait", default=0.0)
        env_lock_wait = env_text(LOCK_WAIT_ENV, environ=environ)
        if env_lock_wait:
            lock_wait = _as_float(env_lock_wait, name=LOCK_WAIT_ENV, default=lock_wait)

        theme = site.get("theme")
        renderer_config = renderer.get("config")
        minimum = renderer.get("minimum_version")
        aliases = site.get("aliases")
        asset_aliases = site.get("asset_aliases")
        upstream = build.get("upstream")

        return cls(
            content_dir=_as_str(repository.get("content_dir"), default="content"),
            build_dir=_as_str(repository.get("build_dir"), default="build"),
            workers=workers,
            lock_wait=lock_wait,
            history_revision=_as_str(build.get("history_revision"), default="HEAD"),
            upstream=upstream.strip() if isinstance(upstream, str) and upstream.strip() else None,
            site=SiteConfig(
                base_url=_as_str(site.get("base_url"), default=SiteConfig.base_url),
                title=_as_str(site.get("title"), default=SiteConfig.title),
                template=_as_str(site.get("template"), default=SiteConfig.template),
                aliases=(
                    tuple(str(item) for item in aliases)
                    if isinstance(aliases, list)
                    else SiteConfig.aliases
                ),
                asset_aliases=(
                    tuple(str(item) for item in asset_aliases)
                    if isinstance(asset_aliases, list)
                    else SiteConfig.asset_aliases
                ),
                theme=(root / theme) if isinstance(theme, str) and theme.strip() else None,
            ),
            renderer=RendererConfig(
                command=_as_command(renderer.get("command"), default=RendererConfig.command),
                config=(
                    (root / renderer_config)
                    if isinstance(renderer_config, str) and renderer_config.strip()
                    else None
                ),
                minimum_version=(
                    version_tuple(minimum)
                    if isinstance(minimum, str)
                    else RendererConfig.minimum_version
                ),
            ),
            bibliography=BibliographyConfig(
                path=Path(_as_str(bibliography.get("path"), default="bibliography.json")),
                style=_as_str(bibliography.get("style"), default=BibliographyConfig.style),
                required=_as_bool(bibliography.get("required")),
            ),
            lint=LintConfig(
                allow=tuple(_normalize_name_list(lint.get("allow"))),
                warn=tuple(_normalize_name_list(lint.get("warn"))),
                deny=tuple(_normalize_name_list(lint.get("deny"))),
            ),
        )


def resolve_config(
    root: Path,
    *,
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BuildConfig:
    return BuildConfig.from_table(
        load_config(root=root, config_path=config_path),
        root=root,
        environ=environ,
    )


def merge_overrides(config: BuildConfig, **overrides: object) -> BuildConfig:
    """Return ``config`` with non-``None`` overrides applied (CLI flags)."""
    changes = {key: value for key, value in overrides.items() if value is not None}
    if not changes:
        return config
    return replace(config, **changes)
