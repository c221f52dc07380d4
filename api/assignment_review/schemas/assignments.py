from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from assignment_review.schemas.evidence import EvidenceOut
from assignment_review.services.models import (
    Assignment,
    AssignmentStatus,
    DecisionAction,
    Difficulty,
    Domain,
    JobHuntingSource,
    PendingFacets,
    Profile,
    VerifiedPage,
)


class ProfileOut(BaseModel):
    user_id: str
    full_name: str
    username: str
    avatar_url: str | None = None

    @classmethod
    def from_profile(cls, profile: Profile) -> ProfileOut:
        return cls(
            user_id=profile.user_id,
            full_name=profile.full_name,
            username=profile.username,
            avatar_url=profile.avatar_url,
        )


class AssignmentOut(BaseModel):
    id: str
    domain: Domain
    sub_source: JobHuntingSource | None = None
    user_id: str
    task_id: str
    title: str
    module: str
    category: str
    points_reward: int
    difficulty: Difficulty | None = None
    status: AssignmentStatus
    submitted_at: datetime | None = None
    verified_at: datetime | None = None
    score_awarded: int | None = None
    verification_notes: str | None = None
    profile: ProfileOut | None = None
    evidence_count: int = 0
    evidence: list[EvidenceOut] | None = None

    @classmethod
    def from_assignment(cls, assignment: Assignment, *, include_evidence: bool = False) -> AssignmentOut:
        return cls(
            id=assignment.id,
            domain=assignment.domain,
            sub_source=assignment.sub_source,
            user_id=assignment.user_id,
            task_id=assignment.task.id,
            title=assignment.title,
            module=assignment.module,
            category=assignment.category,
            points_reward=assignment.points_reward,
            difficulty=assignment.task.difficulty,
            status=assignment.status,
            submitted_at=assignment.submitted_at,
            verified_at=assignment.verified_at,
            score_awarded=assignment.score_awarded,
            verification_notes=assignment.verification_notes,
            profile=ProfileOut.from_profile(assignment.profile) if assignment.profile else None,
            evidence_count=len(assignment.evidence),
            evidence=(
                [
                    EvidenceOut.from_evidence(item, index=index, interpret=False)
                    for index, item in enumerate(assignment.evidence)
                ]
                if include_evidence
                else None
            ),
        )


class VerifiedPageOut(BaseModel):
    items: list[AssignmentOut] = Field(default_factory=list)
    total_count: int
    page: int
    page_size: int

    @classmethod
    def from_page(cls, page: VerifiedPage, *, include_evidence: bool = False) -> VerifiedPageOut:
        return cls(
            items=[AssignmentOut.from_assignment(item, include_evidence=include_evidence) for item in page.items],
            total_count=page.total_count,
            page=page.page,
            page_size=page.page_size,
        )


class FacetOut(BaseModel):
    value: str
    count: int


class SubmitterFacetOut(BaseModel):
    user_id: str
    full_name: str
    username: str
    count: int


class PendingFacetsOut(BaseModel):
    total: int
    modules: list[FacetOut] = Field(default_factory=list)
    submitters: list[SubmitterFacetOut] = Field(default_factory=list)

    @classmethod
    def from_facets(cls, facets: PendingFacets) -> PendingFacetsOut:
        return cls(
            total=facets.total,
            modules=[FacetOut(value=item.value, count=item.count) for item in facets.modules],
            submitters=[
                SubmitterFacetOut(
                    user_id=item.user_id,
                    full_name=item.full_name,
                    username=item.username,
                    count=item.count,
                )
                for item in facets.submitters
            ],
        )


class DecisionRequest(BaseModel):
    action: DecisionAction
    score_awarded: int | None = None
    notes: str | None = None
    sub_source: JobHuntingSource | None = None
