from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from assignment_review.services.evidence_interpreter import EvidenceBreakdown, RenderedNode, interpret_evidence
from assignment_review.services.models import Evidence, EvidenceKind


class RenderedEntryOut(BaseModel):
    key: str
    value: RenderedNodeOut


class RenderedNodeOut(BaseModel):
    kind: Literal["scalar", "list", "map"]
    depth: int
    text: str | None = None
    items: list[RenderedNodeOut] = Field(default_factory=list)
    entries: list[RenderedEntryOut] = Field(default_factory=list)

    @classmethod
    def from_node(cls, node: RenderedNode) -> RenderedNodeOut:
        return cls(
            kind=node.kind,
            depth=node.depth,
            text=node.text,
            items=[cls.from_node(item) for item in node.items],
            entries=[RenderedEntryOut(key=entry.key, value=cls.from_node(entry.value)) for entry in node.entries],
        )


RenderedEntryOut.model_rebuild()
RenderedNodeOut.model_rebuild()


class EvidenceFieldOut(BaseModel):
    key: str
    label: str
    value: RenderedNodeOut


class EvidenceFileOut(BaseModel):
    url: str
    path: str
    name: str


class EvidenceBreakdownOut(BaseModel):
    is_latest: bool
    description: str | None = None
    fields: list[EvidenceFieldOut] = Field(default_factory=list)
    extra: RenderedNodeOut | None = None
    files: list[EvidenceFileOut] = Field(default_factory=list)
    text: str = ""

    @classmethod
    def from_breakdown(cls, breakdown: EvidenceBreakdown) -> EvidenceBreakdownOut:
        return cls(
            is_latest=breakdown.is_latest,
            description=breakdown.description,
            fields=[
                EvidenceFieldOut(key=item.key, label=item.label, value=RenderedNodeOut.from_node(item.value))
                for item in breakdown.fields
            ],
            extra=RenderedNodeOut.from_node(breakdown.extra) if breakdown.extra is not None else None,
            files=[EvidenceFileOut(url=item.url, path=item.path, name=item.name) for item in breakdown.files],
            text=breakdown.text,
        )


class EvidenceOut(BaseModel):
    id: str
    assignment_id: str
    kind: EvidenceKind
    native_kind: str | None = None
    payload: Any = None
    url: str | None = None
    file_urls: list[str] = Field(default_factory=list)
    verification_status: str | None = None
    verification_notes: str | None = None
    submitted_at: datetime | None = None
    verified_at: datetime | None = None
    breakdown: EvidenceBreakdownOut | None = None

    @classmethod
    def from_evidence(cls, evidence: Evidence, *, index: int = 0, interpret: bool = True) -> EvidenceOut:
        return cls(
            id=evidence.id,
            assignment_id=evidence.assignment_id,
            kind=evidence.kind,
            native_kind=evidence.native_kind,
            payload=evidence.payload,
            url=evidence.url,
            file_urls=list(evidence.file_urls),
            verification_status=evidence.verification_status,
            verification_notes=evidence.verification_notes,
            submitted_at=evidence.submitted_at,
            verified_at=evidence.verified_at,
            breakdown=(
                EvidenceBreakdownOut.from_breakdown(interpret_evidence(evidence, index=index)) if interpret else None
            ),
        )
