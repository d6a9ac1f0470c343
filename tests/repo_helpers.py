from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Iterable, Mapping, Sequence

PRIMARY_SECTIONS = (
    "Abstract",
    "Specification",
    "Rationale",
    "Backwards Compatibility",
    "Security Considerations",
    "Copyright",
)


def proposal_text(
    number: int,
    *,
    title: str | None = None,
    status: str = "Draft",
    kind: str = "Primary Track",
    category: str | None = "Core",
    author: str = "Alice Example (@alice)",
    created: str = "2024-01-01",
    requires: Sequence[int] = (),
    description: str | None = None,
    body: str = "",
    sections: Iterable[str] = PRIMARY_SECTIONS,
) -> str:
    lines = ["---", f"eip: {number}", f"title: {title or f'Proposal {number}'}"]
    if description is not None:
        lines.append(f"description: {description}")
    lines.extend([f"author: {author}", f"status: {status}", f"type: {kind}"])
    if category is not None:
        lines.append(f"category: {category}")
    lines.append(f"created: {created}")
    if requires:
        lines.append("requires: " + ", ".join(str(item) for item in requires))
    lines.append("---")
    lines.append("")
    for index, section in enumerate(sections):
        lines.append(f"## {section}")
        lines.append("")
        lines.append(f"{section} of proposal {number}.")
        if index == 0 and body:
            lines.append("")
            lines.append(body)
        lines.append("")
    return "\n".join(lines)


class RepoBuilder:
    """Throw-away proposal repository rooted in a temporary directory."""

    def __init__(self, root: Path, *, content_dir: str = "content"):
        self.root = root
        self.content_dir = content_dir
        (root / ".git").mkdir(parents=True, exist_ok=True)
        self.content.mkdir(parents=True, exist_ok=True)

    @property
    def content(self) -> Path:
        return self.root / self.content_dir

    def write(
        self,
        number: int,
        text: str,
        *,
        bundle: bool = False,
        assets: Mapping[str, bytes | str] | None = None,
    ) -> Path:
        if bundle or assets:
            directory = self.content / f"{number:05d}"
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / "index.md"
            for relative, data in (assets or {}).items():
                target = directory / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                if isinstance(data, str):
                    target.write_text(data, encoding="utf-8")
                else:
                    target.write_bytes(data)
        else:
            path = self.content / f"{number:05d}.md"
        path.write_text(text, encoding="utf-8")
        return path

    def proposal(self, number: int, **kwargs: object) -> Path:
        bundle = bool(kwargs.pop("bundle", False))
        assets = kwargs.pop("assets", None)
        return self.write(number, proposal_text(number, **kwargs), bundle=bundle, assets=assets)  # type: ignore[arg-type]

    def bibliography(self, entries: list[dict[str, object]], *, name: str = "bibliography.json") -> Path:
        path = self.root / name
        path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
        return path

    def config(self, text: str) -> Path:
        path = self.root / "propsite.toml"
        path.write_text(text, encoding="utf-8")
        return path


def completed(args: Sequence[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> "subprocess.CompletedProcess[str]":
    return subprocess.CompletedProcess(list(args), returncode, stdout=stdout, stderr=stderr)


class FakeZola:
    """Stand-in for ``subprocess.run`` that answers like the zola CLI."""

    def __init__(
        self,
        *,
        version: str = "zola 0.19.2",
        build_returncode: int = 0,
        build_stdout: str = "Building site...\nDone in 10ms.\n",
        build_stderr: str = "",
        serve_returncode: int = 0,
    ):
        self.version = version
        self.build_returncode = build_returncode
        self.build_stdout = build_stdout
        self.build_stderr = build_stderr
        self.serve_returncode = serve_returncode
        self.calls: list[dict[str, object]] = []

    def __call__(self, args: Sequence[str], **kwargs: object) -> "subprocess.CompletedProcess[str]":
        self.calls.append({"args": list(args), **kwargs})
        if "--version" in args:
            return completed(args, stdout=f"{self.version}\n")
        if "serve" in args:
            return completed(args, returncode=self.serve_returncode)
        if "build" in args and self.build_returncode == 0:
            output = Path(args[list(args).index("-o") + 1])
            output.mkdir(parents=True, exist_ok=True)
            (output / "index.html").write_text("<html></html>\n", encoding="utf-8")
        return completed(
            args,
            returncode=self.build_returncode,
            stdout=self.build_stdout,
            stderr=self.build_stderr,
        )

    def commands(self, name: str) -> list[list[str]]:
        return [call["args"] for call in self.calls if name in call["args"]]  # type: ignore[misc]


class FakeGit:
    """Stand-in for ``subprocess.run`` answering ``git`` queries from a table.

    ``files`` maps repo-relative paths to their committed text and
    ``commit_times`` to the Unix time of their last commit; empty tables
    behave like a directory that is not a git work tree.
    """

    def __init__(
        self,
        files: Mapping[str, str] | None = None,
        *,
        merge_base: str | None = "abc123",
        diff: Sequence[str] = (),
        tracked: Sequence[str] = (),
        commit_times: Mapping[str, int] | None = None,
    ):
        self.files = dict(files or {})
        self.commit_times = dict(commit_times or {})
        self.merge_base = merge_base
        self.diff = list(diff)
        self.tracked = list(tracked)
        self.calls: list[list[str]] = []

    def __call__(self, args: Sequence[str], **kwargs: object) -> "subprocess.CompletedProcess[str]":
        args = list(args)
        self.calls.append(args)
        command = args[1]
        if command == "rev-parse":
            return completed(args, returncode=0 if self.files or self.tracked or self.commit_times else 128, stdout="abc123\n")
        if command == "show":
            _, _, path = args[2].partition(":")
            if path in self.files:
                return completed(args, stdout=self.files[path])
            return completed(args, returncode=128, stderr=f"fatal: path '{path}' does not exist\n")
        if command == "merge-base":
            if self.merge_base is None:
                return completed(args, returncode=1)
            return completed(args, stdout=f"{self.merge_base}\n")
        if command == "diff":
            return completed(args, stdout="".join(f"{item}\0" for item in self.diff))
        if command == "ls-files":
            return completed(args, stdout="".join(f"{item}\0" for item in self.tracked))
        if command == "log":
            stamp = self.commit_times.get(args[-1])
            return completed(args, stdout="" if stamp is None else str(stamp))
        return completed(args, returncode=1, stderr=f"unsupported: {args}\n")


class FakeStyle:
    """Citation style that renders an entry as its title."""

    name = "fake"

    def __init__(self) -> None:
        self.rendered: list[str] = []

    def render(self, entry) -> str:
        self.rendered.append(entry.id)
        return entry.title or entry.id
