from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from assignment_review.services.errors import AdapterFetchError
from assignment_review.services.models import (
    DIFFICULTIES,
    Assignment,
    AssignmentStatus,
    Difficulty,
    Domain,
    Evidence,
    EvidenceKind,
    JobHuntingSource,
    Profile,
    RawSubmission,
    TaskDefinition,
    TerminalStatus,
    UNKNOWN_USER_NAME,
    UNKNOWN_USERNAME,
)
from assignment_review.services.repository import SUBMISSION_SCHEMAS, SubmissionSchema, SubmissionSource


@dataclass(frozen=True, slots=True)
class StatusVocabulary:
    """Native status tokens of one backing store and how they map to the canonical enum."""

    native: Mapping[AssignmentStatus, tuple[str, ...]]
    write: Mapping[TerminalStatus, str]
    case_insensitive: bool = False

    def canonical(self, token: str | None) -> AssignmentStatus | None:
        if token is None:
            return None
        cleaned = token.strip()
        for status, tokens in self.native.items():
            for native in tokens:
                if cleaned == native or (self.case_insensitive and cleaned.lower() == native.lower()):
                    return status
        return None

    def tokens(self, status: AssignmentStatus) -> tuple[str, ...]:
        tokens = self.native[status]
        if not self.case_insensitive:
            return tokens
        spelled: list[str] = []
        for token in tokens:
            for variant in (token, token.lower(), token.upper()):
                if variant not in spelled:
                    spelled.append(variant)
        return tuple(spelled)


_LOWERCASE = StatusVocabulary(
    native={"submitted": ("submitted",), "verified": ("verified",), "rejected": ("rejected",)},
    write={"verified": "verified", "rejected": "rejected"},
)

STATUS_VOCABULARIES: dict[SubmissionSource, StatusVocabulary] = {
    "career": _LOWERCASE,
    "interview_preparation": _LOWERCASE,
    "job_hunting": StatusVocabulary(
        native={"submitted": ("submitted",), "verified": ("verified",), "rejected": ("rejected",)},
        write={"verified": "verified", "rejected": "rejected"},
        case_insensitive=True,
    ),
    "linkedin": StatusVocabulary(
        native={
            "submitted": ("SUBMITTED", "PARTIALLY_VERIFIED"),
            "verified": ("VERIFIED",),
            "rejected": ("REJECTED",),
        },
        write={"verified": "VERIFIED", "rejected": "REJECTED"},
    ),
    "github": StatusVocabulary(
        native={
            "submitted": ("SUBMITTED", "PARTIALLY_VERIFIED"),
            "verified": ("VERIFIED",),
            "rejected": ("REJECTED",),
        },
        write={"verified": "VERIFIED", "rejected": "REJECTED"},
        case_insensitive=True,
    ),
}

EVIDENCE_STATUS_FOR: dict[TerminalStatus, str] = {"verified": "approved", "rejected": "rejected"}

_SYNTHETIC_CATEGORIES: dict[Domain, str] = {
    "linkedin": "LinkedIn Activities",
    "github": "GitHub Activities",
}

# Native evidence kind tokens, compared lowercased.
_KIND_ALIASES: dict[str, EvidenceKind] = {
    "url": "url",
    "link": "url",
    "url_required": "url",
    "website": "url",
    "email": "email",
    "email_forward": "email",
    "github": "github",
    "commit": "github",
    "repository": "github",
    "pull_request": "github",
    "linkedin": "linkedin",
    "linkedin_post": "linkedin",
    "linkedin_profile": "linkedin",
    "job_application": "job_application",
    "application": "job_application",
}

_DOMAIN_FALLBACK_KINDS: dict[Domain, EvidenceKind] = {
    "linkedin": "linkedin",
    "github": "github",
    "job_hunting": "job_application",
}


def source_for(domain: Domain, sub_source: JobHuntingSource | None = None) -> SubmissionSource:
    if domain == "job_hunting" and sub_source == "interview_preparation":
        return "interview_preparation"
    return domain


def vocabulary_for(domain: Domain, sub_source: JobHuntingSource | None = None) -> StatusVocabulary:
    return STATUS_VOCABULARIES[source_for(domain, sub_source)]


def normalize_status(domain: Domain, token: str | None, sub_source: JobHuntingSource | None = None) -> AssignmentStatus:
    status = vocabulary_for(domain, sub_source).canonical(token)
    if status is None:
        raise AdapterFetchError(
            f"unknown {source_for(domain, sub_source)} status token {token!r}",
            domain=domain,
            operation="normalize",
        )
    return status


def canonical_evidence_kind(domain: Domain, native_kind: str | None) -> EvidenceKind:
    if native_kind:
        alias = _KIND_ALIASES.get(native_kind.strip().lower())
        if alias is not None:
            return alias
    return _DOMAIN_FALLBACK_KINDS.get(domain, "generic")


def normalize_assignment(raw: RawSubmission) -> Assignment:
    schema = _schema_for(raw.domain, raw.sub_source)
    row = raw.row
    template = row.get(schema.templates_table) or {}
    assignment_id = str(row["id"])
    status = normalize_status(raw.domain, row.get("status"), raw.sub_source)

    return Assignment(
        id=assignment_id,
        domain=raw.domain,
        user_id=str(row["user_id"]),
        task=TaskDefinition(
            id=str(template.get("id") or row.get(schema.template_fk) or ""),
            title=_text(template.get("title")) or "Untitled task",
            domain=raw.domain,
            module=_module_for(raw.domain, schema, template),
            category=_category_for(raw.domain, schema, template),
            points_reward=max(_int(template.get(schema.points_column)) or 0, 0),
            difficulty=_difficulty(template.get(schema.difficulty_column) if schema.difficulty_column else None),
            is_active=bool(template.get("is_active", True)),
        ),
        status=status,
        submitted_at=_datetime(row.get(schema.submitted_at_column)),
        verified_at=_datetime(row.get("verified_at")),
        score_awarded=_int(row.get("score_awarded")),
        verification_notes=_text(row.get("verification_notes")),
        sub_source=raw.sub_source if raw.domain == "job_hunting" else None,
    )


def normalize_evidence(
    domain: Domain,
    row: Mapping[str, Any],
    sub_source: JobHuntingSource | None = None,
) -> Evidence:
    schema = _schema_for(domain, sub_source)
    native_kind = _text(row.get(schema.evidence_kind_column))
    files = row.get(schema.evidence_files_column)
    if isinstance(files, str):
        files = [files]
    return Evidence(
        id=str(row["id"]),
        assignment_id=str(row[schema.evidence_fk]),
        kind=canonical_evidence_kind(domain, native_kind),
        native_kind=native_kind,
        payload=row.get(schema.evidence_payload_column),
        submitted_at=_datetime(row.get("created_at")),
        url=_text(row.get("url")),
        file_urls=[item for item in files or [] if isinstance(item, str) and item.strip()],
        verification_status=_text(row.get("verification_status")),
        verification_notes=_text(row.get("verification_notes")),
        verified_at=_datetime(row.get("verified_at")),
    )


def normalize_profile(row: Mapping[str, Any]) -> Profile:
    return Profile(
        user_id=str(row["user_id"]),
        full_name=_text(row.get("full_name")) or UNKNOWN_USER_NAME,
        username=_text(row.get("username")) or UNKNOWN_USERNAME,
        avatar_url=_text(row.get("profile_image_url")),
    )


def _schema_for(domain: Domain, sub_source: JobHuntingSource | None) -> SubmissionSchema:
    return SUBMISSION_SCHEMAS[source_for(domain, sub_source)]


def _module_for(domain: Domain, schema: SubmissionSchema, template: Mapping[str, Any]) -> str:
    if domain == "career" and schema.module_column:
        return _text(template.get(schema.module_column)) or domain
    return domain


def _category_for(domain: Domain, schema: SubmissionSchema, template: Mapping[str, Any]) -> str:
    synthetic = _SYNTHETIC_CATEGORIES.get(domain)
    if synthetic is not None:
        return synthetic
    if schema.category_column:
        return _text(template.get(schema.category_column)) or "general"
    return "general"


def _difficulty(value: Any) -> Difficulty | None:
    text = _text(value)
    if text is None:
        return None
    lowered = text.lower()
    for difficulty in DIFFICULTIES:
        if difficulty == lowered:
            return difficulty
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return None
