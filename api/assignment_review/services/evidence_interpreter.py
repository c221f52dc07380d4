from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from assignment_review.services.models import Evidence, EvidenceKind

NodeKind = Literal["scalar", "list", "map"]

MAX_RENDER_DEPTH = 64
_STORAGE_PREFIX = re.compile(r"^.*?/storage/v1/object/public/[^/]+/")

# (payload key, label); payload keys are matched in snake_case and camelCase.
KIND_FIELDS: dict[EvidenceKind, tuple[tuple[str, str], ...]] = {
    "url": (
        ("url", "URL"),
        ("title", "Title"),
        ("description", "Description"),
        ("notes", "Notes"),
    ),
    "email": (
        ("subject", "Subject"),
        ("from", "From"),
        ("to", "To"),
        ("date", "Date"),
        ("body", "Body"),
    ),
    "github": (
        ("repository", "Repository"),
        ("commit_sha", "Commit SHA"),
        ("branch", "Branch"),
        ("commit_message", "Commit message"),
        ("files_changed", "Files changed"),
        ("description", "Description"),
    ),
    "linkedin": (
        ("post_url", "Post URL"),
        ("content", "Content"),
        ("connections_count", "Connections"),
        ("profile_views", "Profile views"),
        ("post_count", "Posts"),
        ("connections_accepted", "Connections accepted"),
        ("description", "Description"),
        ("tracking_metrics", "Tracking metrics"),
    ),
    "job_application": (
        ("company_name", "Company"),
        ("position", "Position"),
        ("application_url", "Application URL"),
        ("application_date", "Application date"),
        ("status", "Status"),
        ("notes", "Notes"),
        ("description", "Description"),
    ),
    "generic": (),
}


@dataclass(slots=True)
class RenderedEntry:
    key: str
    value: RenderedNode


@dataclass(slots=True)
class RenderedNode:
    kind: NodeKind
    depth: int
    text: str | None = None
    items: list[RenderedNode] = field(default_factory=list)
    entries: list[RenderedEntry] = field(default_factory=list)


@dataclass(slots=True)
class EvidenceField:
    key: str
    label: str
    value: RenderedNode


@dataclass(slots=True)
class EvidenceFile:
    url: str
    path: str
    name: str


@dataclass(slots=True)
class EvidenceBreakdown:
    evidence_id: str
    kind: EvidenceKind
    is_latest: bool
    description: str | None
    url: str | None
    verification_status: str | None
    fields: list[EvidenceField]
    extra: RenderedNode | None
    files: list[EvidenceFile]
    text: str = ""


def render_value(value: Any, depth: int = 0) -> RenderedNode:
    """Render any JSON value; beyond MAX_RENDER_DEPTH subtrees collapse to JSON text."""

    if isinstance(value, Mapping):
        if depth >= MAX_RENDER_DEPTH:
            return RenderedNode(kind="scalar", depth=depth, text=_dump(value))
        return RenderedNode(
            kind="map",
            depth=depth,
            entries=[RenderedEntry(key=str(key), value=render_value(item, depth + 1)) for key, item in value.items()],
        )
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        if depth >= MAX_RENDER_DEPTH:
            return RenderedNode(kind="scalar", depth=depth, text=_dump(value))
        return RenderedNode(kind="list", depth=depth, items=[render_value(item, depth + 1) for item in value])
    return RenderedNode(kind="scalar", depth=depth, text=scalar_text(value))


def scalar_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, bool):
        return json.dumps(value)
    return str(value)


def interpret_evidence(evidence: Evidence, *, index: int = 0) -> EvidenceBreakdown:
    payload = evidence.payload
    fields: list[EvidenceField] = []
    extra: RenderedNode | None = None

    if isinstance(payload, Mapping):
        consumed: set[str] = set()
        for key, label in KIND_FIELDS.get(evidence.kind, ()):
            matched = _lookup(payload, key)
            if matched is None:
                continue
            payload_key, value = matched
            consumed.add(payload_key)
            if value is None or value == "":
                continue
            fields.append(EvidenceField(key=key, label=label, value=render_value(value)))
        remaining = {key: value for key, value in payload.items() if key not in consumed}
        if remaining:
            extra = render_value(remaining)
    elif payload is not None:
        extra = render_value(payload)

    breakdown = EvidenceBreakdown(
        evidence_id=evidence.id,
        kind=evidence.kind,
        is_latest=index == 0,
        description=_description(payload),
        url=evidence.url,
        verification_status=evidence.verification_status,
        fields=fields,
        extra=extra,
        files=_files(evidence.file_urls, payload),
    )
    breakdown.text = format_breakdown(breakdown)
    return breakdown


def interpret_all(evidence: Sequence[Evidence]) -> list[EvidenceBreakdown]:
    return [interpret_evidence(item, index=index) for index, item in enumerate(evidence)]


def format_breakdown(breakdown: EvidenceBreakdown) -> str:
    lines = [f"[{breakdown.kind}]{' (latest)' if breakdown.is_latest else ''}"]
    if breakdown.url:
        lines.append(f"Link: {breakdown.url}")
    for item in breakdown.fields:
        _format_labelled(lines, item.label, item.value, indent=0)
    if breakdown.extra is not None:
        if breakdown.extra.kind == "map":
            for entry in breakdown.extra.entries:
                _format_labelled(lines, entry.key, entry.value, indent=0)
        else:
            _format_labelled(lines, "Data", breakdown.extra, indent=0)
    for item in breakdown.files:
        lines.append(f"File: {item.name} ({item.path})")
    return "\n".join(lines)


def storage_path(file_url: str) -> str:
    return _STORAGE_PREFIX.sub("", file_url, count=1)


def _format_labelled(lines: list[str], label: str, node: RenderedNode, indent: int) -> None:
    pad = "  " * indent
    if node.kind == "scalar":
        lines.append(f"{pad}{label}: {node.text}")
        return
    lines.append(f"{pad}{label}:")
    _format_children(lines, node, indent + 1)


def _format_children(lines: list[str], node: RenderedNode, indent: int) -> None:
    pad = "  " * indent
    if node.kind == "map":
        for entry in node.entries:
            _format_labelled(lines, entry.key, entry.value, indent)
        return
    for item in node.items:
        if item.kind == "scalar":
            lines.append(f"{pad}- {item.text}")
        else:
            lines.append(f"{pad}-")
            _format_children(lines, item, indent + 1)


def _lookup(payload: Mapping[str, Any], key: str) -> tuple[str, Any] | None:
    for candidate in (key, _camel(key)):
        if candidate in payload:
            return candidate, payload[candidate]
    return None


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _description(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    for key in ("description", "text"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _files(file_urls: Sequence[str], payload: Any) -> list[EvidenceFile]:
    file_name = None
    if isinstance(payload, Mapping):
        matched = _lookup(payload, "file_name")
        if matched is not None and isinstance(matched[1], str) and matched[1].strip():
            file_name = matched[1].strip()
    files: list[EvidenceFile] = []
    for position, url in enumerate(file_urls, start=1):
        name = file_name if file_name and len(file_urls) == 1 else f"File {position}"
        files.append(EvidenceFile(url=url, path=storage_path(url), name=name))
    return files


def _dump(value: Any) -> str:
    return json.dumps(value, default=str)
