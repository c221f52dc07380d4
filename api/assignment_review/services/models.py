from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, get_args

Domain = Literal["career", "linkedin", "job_hunting", "github"]
AssignmentStatus = Literal["submitted", "verified", "rejected"]
TerminalStatus = Literal["verified", "rejected"]
EvidenceKind = Literal["url", "email", "github", "linkedin", "job_application", "generic"]
DecisionAction = Literal["approve", "reject"]
JobHuntingSource = Literal["job_hunting", "interview_preparation"]
Difficulty = Literal["beginner", "intermediate", "advanced"]

DOMAINS: tuple[Domain, ...] = get_args(Domain)
EVIDENCE_KINDS: tuple[EvidenceKind, ...] = get_args(EvidenceKind)
JOB_HUNTING_SOURCES: tuple[JobHuntingSource, ...] = get_args(JobHuntingSource)
DIFFICULTIES: tuple[Difficulty, ...] = get_args(Difficulty)

UNKNOWN_USER_NAME = "Unknown User"
UNKNOWN_USERNAME = "unknown"


@dataclass(slots=True)
class TaskDefinition:
    id: str
    title: str
    domain: Domain
    module: str
    category: str
    points_reward: int
    difficulty: Difficulty | None = None
    is_active: bool = True


@dataclass(slots=True)
class Profile:
    user_id: str
    full_name: str
    username: str
    avatar_url: str | None = None

    @classmethod
    def placeholder(cls, user_id: str) -> Profile:
        return cls(user_id=user_id, full_name=UNKNOWN_USER_NAME, username=UNKNOWN_USERNAME)


@dataclass(slots=True)
class Evidence:
    id: str
    assignment_id: str
    kind: EvidenceKind
    native_kind: str | None
    payload: Any
    submitted_at: datetime | None
    url: str | None = None
    file_urls: list[str] = field(default_factory=list)
    verification_status: str | None = None
    verification_notes: str | None = None
    verified_at: datetime | None = None


@dataclass(slots=True)
class Assignment:
    id: str
    domain: Domain
    user_id: str
    task: TaskDefinition
    status: AssignmentStatus
    submitted_at: datetime | None
    verified_at: datetime | None = None
    score_awarded: int | None = None
    verification_notes: str | None = None
    sub_source: JobHuntingSource | None = None
    evidence: list[Evidence] = field(default_factory=list)
    profile: Profile | None = None

    @property
    def title(self) -> str:
        return self.task.title

    @property
    def points_reward(self) -> int:
        return self.task.points_reward

    @property
    def module(self) -> str:
        return self.task.module

    @property
    def category(self) -> str:
        return self.task.category


@dataclass(slots=True)
class RawSubmission:
    """One native row as read from a domain store, tagged with where it came from."""

    domain: Domain
    row: dict[str, Any]
    sub_source: JobHuntingSource | None = None


@dataclass(slots=True)
class VerificationDecision:
    assignment_id: str
    domain: Domain
    action: DecisionAction
    score_awarded: int = 0
    notes: str | None = None
    sub_source: JobHuntingSource | None = None
    reviewer_id: str | None = None


@dataclass(frozen=True, slots=True)
class ReviewFilters:
    module: str | None = None
    submitter_name_contains: str | None = None
    domain: Domain | None = None
    user_id: str | None = None
    search: str | None = None
    # Restricts results to these submitters; set for institute admins.
    user_ids: frozenset[str] | None = None

    def cache_key(self) -> tuple[Any, ...]:
        return (
            self.module.strip().lower() if self.module else None,
            self.submitter_name_contains.strip().lower() if self.submitter_name_contains else None,
            self.domain,
            self.user_id,
            self.search.strip().lower() if self.search else None,
            tuple(sorted(self.user_ids)) if self.user_ids is not None else None,
        )


@dataclass(slots=True)
class VerifiedPage:
    items: list[Assignment]
    total_count: int
    page: int
    page_size: int


@dataclass(slots=True)
class FacetCount:
    value: str
    count: int


@dataclass(slots=True)
class SubmitterFacet:
    user_id: str
    full_name: str
    username: str
    count: int


@dataclass(slots=True)
class PendingFacets:
    modules: list[FacetCount]
    submitters: list[SubmitterFacet]
    total: int
