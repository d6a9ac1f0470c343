"""Rewrite a parsed proposal into renderer-ready content.

Everything here is a pure function of its arguments: no file reads, no clock.
The orchestrator reads markdown assets up front and passes their text in.
"""

from __future__ import annotations

import json
import posixpath
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Mapping

import yaml

from propsite.bibliography import (
    CSL_JSON_LANGUAGE,
    CitationStyle,
    ResolvedCitations,
    bibliography_anchor,
    parse_entry,
    render_bibliography,
)
from propsite.config import SiteConfig
from propsite.errors import CitationError, TransformError
from propsite.graph import ReferenceGraph, resolve_link
from propsite.markdown import CitationMarker, Document, Link, parse_document
from propsite.model import AssetCopy, ContentArtifact
from propsite.preamble import ParsedProposal
from propsite.walker import ASSETS_DIR, parse_number

FRONT_MATTER_DELIMITER = "---"
INDEX_TARGET = "_index.md"


@dataclass(frozen=True)
class UrlScheme:
    """Bijection between proposal numbers and site paths."""

    base_path: str = "/"

    def path_for(self, number: int) -> str:
        if number <= 0:
            raise TransformError(f"proposal numbers are positive, got {number}", number=number)
        return f"{self.base_path}{number}/"

    def number_for(self, path: str) -> int | None:
        if not path.startswith(self.base_path):
            return None
        rest = path[len(self.base_path) :]
        if not rest.endswith("/"):
            return None
        number = parse_number(rest[:-1])
        if number is None or self.path_for(number) != path:
            return None
        return number

    def asset_path(self, number: int, relative: str) -> str:
        return f"{self.path_for(number)}{relative}"


def render_page(front_matter: Mapping[str, object], body: str) -> str:
    header = yaml.safe_dump(
        dict(front_matter),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )
    text = body if body.endswith("\n") or not body else body + "\n"
    return f"{FRONT_MATTER_DELIMITER}\n{header}{FRONT_MATTER_DELIMITER}\n{text}"


def render_artifact(artifact: ContentArtifact) -> str:
    return render_page(artifact.front_matter, artifact.body)


def section_index(site: SiteConfig) -> str:
    return render_page({"title": site.title, "sort_by": "slug"}, "")


def _asset_target(repo_path: str, *, content_dir: str) -> tuple[int, str] | None:
    parts = PurePosixPath(repo_path).parts
    if len(parts) < 4 or parts[0] != content_dir or parts[2] != ASSETS_DIR:
        return None
    number = parse_number(parts[1])
    if number is None:
        return None
    return number, posixpath.join(*parts[2:])


def _link_replacement(
    link: Link,
    *,
    source: PurePosixPath,
    scheme: UrlScheme,
    content_dir: str,
) -> str | None:
    resolved = resolve_link(link.target, source=source, content_dir=content_dir)
    if resolved is None:
        return None
    fragment = f"#{resolved.fragment}" if resolved.fragment else ""
    if resolved.number is not None:
        return scheme.path_for(resolved.number) + fragment
    asset = _asset_target(resolved.repo_path, content_dir=content_dir)
    if asset is not None:
        number, relative = asset
        if relative.endswith(".md"):
            relative = relative[: -len(".md")] + "/"
        return scheme.asset_path(number, relative) + fragment
    return None


def _citation_text(marker: CitationMarker, resolved: ResolvedCitations) -> str:
    parts: list[str] = []
    for key in marker.keys:
        number = resolved.numbers.get(key)
        if number is None:
            parts.append(f"@{key}")
        else:
            parts.append(f"[{number}](#{bibliography_anchor(key)})")
    return "[" + ", ".join(parts) + "]"


def _render_inline_entry(text: str, style: CitationStyle) -> str | None:
    try:
        entry = parse_entry(json.loads(text))
    except (json.JSONDecodeError, CitationError):
        return None
    return f"<div class=\"csl-entry\">{style.render(entry)}</div>"


def rewrite_body(
    document: Document,
    *,
    source: PurePosixPath,
    scheme: UrlScheme,
    content_dir: str,
    resolved: ResolvedCitations | None = None,
    style: CitationStyle | None = None,
) -> str:
    """Apply link, citation and inline-entry rewrites, keeping untouched text byte-equal."""
    edits: dict[int, list[tuple[int, int, str]]] = {}
    for link in document.links:
        replacement = _link_replacement(link, source=source, scheme=scheme, content_dir=content_dir)
        if replacement is not None:
            edits.setdefault(link.line, []).append((link.target_start, link.target_end, replacement))
    if resolved is not None:
        for marker in document.citations:
            edits.setdefault(marker.line, []).append((marker.start, marker.end, _citation_text(marker, resolved)))

    replaced_blocks: dict[int, tuple[int, str]] = {}
    if style is not None:
        for block in document.code_blocks:
            if block.language != CSL_JSON_LANGUAGE or not block.closed:
                continue
            rendered = _render_inline_entry(block.text, style)
            if rendered is not None:
                replaced_blocks[block.line] = (block.end_line, rendered)

    out: list[str] = []
    line_no = document.first_line
    last = document.first_line + len(document.lines) - 1
    while line_no <= last:
        block = replaced_blocks.get(line_no)
        if block is not None:
            end_line, rendered = block
            out.append(rendered)
            line_no = end_line + 1
            continue
        text = document.line_text(line_no)
        for start, end, replacement in sorted(edits.get(line_no, ()), reverse=True):
            if start < 0 or end > len(text) or start > end:
                raise TransformError(f"rewrite outside line {line_no}")
            text = text[:start] + replacement + text[end:]
        out.append(text)
        line_no += 1
    return "\n".join(out)


def _enum_value(value: object) -> object:
    return value.value if isinstance(value, Enum) else value


def front_matter_for(
    parsed: ParsedProposal,
    *,
    graph: ReferenceGraph,
    scheme: UrlScheme,
    site: SiteConfig,
    updated: str | None = None,
) -> dict[str, object]:
    """Zola front matter; ``updated`` is the last commit time of the source, when known."""
    proposal = parsed.proposal
    if proposal is None:
        raise TransformError("cannot transform a proposal without a number", number=parsed.number)
    number = proposal.number

    requires: list[dict[str, object]] = []
    for target in proposal.requires:
        summary = graph.summary(target)
        item: dict[str, object] = {"number": target, "path": scheme.path_for(target)}
        if summary is not None:
            item["title"] = summary.title
            item["status"] = summary.status.value if summary.status is not None else None
        requires.append(item)

    extra: dict[str, object] = {
        "number": number,
        "status": _enum_value(proposal.status),
        "kind": _enum_value(proposal.kind),
        "author_details": [author.as_dict() for author in proposal.authors],
        "requires": requires,
    }
    if proposal.category is not None:
        extra["category"] = proposal.category.value
    if proposal.discussions_to is not None:
        extra["discussions_to"] = proposal.discussions_to
    for name, value in proposal.extra.items():
        extra[name.replace("-", "_")] = value

    taxonomies: dict[str, list[str]] = {}
    if proposal.status is not None:
        taxonomies["status"] = [proposal.status.value]
    if proposal.kind is not None:
        taxonomies["kind"] = [proposal.kind.value]
    if proposal.category is not None:
        taxonomies["category"] = [proposal.category.value]

    front: dict[str, object] = {"title": proposal.title}
    if proposal.description:
        front["description"] = proposal.description
    if proposal.created is not None:
        front["date"] = proposal.created
    if updated is not None:
        front["updated"] = updated
    front["draft"] = proposal.status is None or not proposal.status.published
    front["slug"] = str(number)
    front["path"] = str(number)
    front["aliases"] = [pattern.format(number=number) for pattern in site.aliases]
    front["authors"] = [author.name for author in proposal.authors]
    front["template"] = site.template
    front["taxonomies"] = taxonomies
    front["extra"] = extra
    return front


def _asset_page(
    number: int,
    relative: str,
    text: str,
    *,
    bundle: PurePosixPath,
    scheme: UrlScheme,
    site: SiteConfig,
    content_dir: str,
) -> ContentArtifact:
    inner = posixpath.relpath(relative, ASSETS_DIR)
    stem = inner[: -len(".md")]
    aliases = [f"{base.format(number=number)}/{stem}" for base in site.asset_aliases]
    if stem == "README" or stem == "index" or stem.endswith("/README") or stem.endswith("/index"):
        parent = posixpath.dirname(stem)
        aliases.extend(
            f"{base.format(number=number)}/{parent}".rstrip("/") for base in site.asset_aliases
        )
    document = parse_document(text)
    body = rewrite_body(
        document,
        source=bundle / relative,
        scheme=scheme,
        content_dir=content_dir,
    )
    return ContentArtifact(
        number=number,
        target=f"{number}/{relative}",
        body=body,
        front_matter={"path": f"{number}/{ASSETS_DIR}/{stem}", "aliases": aliases},
    )


def transform(
    parsed: ParsedProposal,
    *,
    source: PurePosixPath,
    graph: ReferenceGraph,
    scheme: UrlScheme,
    site: SiteConfig,
    resolved: ResolvedCitations,
    style: CitationStyle,
    content_dir: str = "content",
    asset_texts: Mapping[str, str] | None = None,
    updated: str | None = None,
) -> ContentArtifact:
    """Build the artifact for one schema-valid proposal."""
    proposal = parsed.proposal
    if proposal is None or not parsed.schema_valid:
        raise TransformError("schema-invalid proposals are not transformed", number=parsed.number)
    number = proposal.number

    try:
        body = rewrite_body(
            parsed.document,
            source=source,
            scheme=scheme,
            content_dir=content_dir,
            resolved=resolved,
            style=style,
        )
        section = render_bibliography(resolved, style)
    except CitationError as exc:
        raise TransformError(f"citation rendering failed: {exc}", number=number) from exc
    if section:
        body = body.rstrip("\n") + "\n\n" + section

    candidate = parsed.candidate
    assets: list[AssetCopy] = []
    pages: list[ContentArtifact] = []
    texts = asset_texts or {}
    for relative in candidate.assets:
        if relative.endswith(".md"):
            text = texts.get(relative)
            if text is None:
                raise TransformError(f"markdown asset `{relative}` was not loaded", number=number)
            pages.append(
                _asset_page(
                    number,
                    relative,
                    text,
                    bundle=source.parent,
                    scheme=scheme,
                    site=site,
                    content_dir=content_dir,
                )
            )
            continue
        assets.append(AssetCopy(source=candidate.asset_path(relative), target=f"{number}/{relative}"))

    return ContentArtifact(
        number=number,
        target=f"{number}/index.md",
        body=body,
        front_matter=front_matter_for(parsed, graph=graph, scheme=scheme, site=site, updated=updated),
        assets=tuple(assets),
        pages=tuple(pages),
    )
