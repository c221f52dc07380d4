from __future__ import annotations

import logging
from collections.abc import Collection, Mapping
from datetime import datetime
from typing import Any, Protocol

from assignment_review.services.errors import (
    AdapterFetchError,
    AdapterWriteError,
    AssignmentNotFoundError,
    DecisionConflictError,
    DecisionValidationError,
)
from assignment_review.services.fanout import fan_out
from assignment_review.services.models import (
    JOB_HUNTING_SOURCES,
    Domain,
    JobHuntingSource,
    RawSubmission,
    TerminalStatus,
    VerificationDecision,
)
from assignment_review.services.normalizer import EVIDENCE_STATUS_FOR, StatusVocabulary, vocabulary_for
from assignment_review.services.repository import (
    DecisionWrite,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SubmissionSchema,
)

logger = logging.getLogger(__name__)

EvidenceRows = dict[str, list[dict[str, Any]]]


class SubmissionStore(Protocol):
    schema: SubmissionSchema

    async def query_by_status(
        self,
        statuses: Collection[str],
        *,
        user_ids: Collection[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def query_by_status_paged(
        self,
        statuses: Collection[str],
        *,
        offset: int,
        limit: int,
        user_ids: Collection[str] | None = None,
    ) -> tuple[list[dict[str, Any]], int]: ...

    async def get_submission(self, assignment_id: str) -> dict[str, Any]: ...

    async def query_evidence_by_assignment_ids(self, assignment_ids: Collection[str]) -> list[dict[str, Any]]: ...

    async def update_decision(
        self,
        assignment_id: str,
        *,
        expected_statuses: Collection[str],
        write: DecisionWrite,
    ) -> dict[str, Any]: ...


class SourceAdapter(Protocol):
    domain: Domain

    async def fetch_pending(self, *, user_ids: Collection[str] | None = None) -> list[RawSubmission]: ...

    async def fetch_verified_page(
        self,
        *,
        offset: int,
        limit: int,
        status: TerminalStatus = "verified",
        user_ids: Collection[str] | None = None,
    ) -> tuple[list[RawSubmission], int]: ...

    async def fetch_evidence(
        self,
        assignment_ids: Collection[str],
        *,
        sub_source: JobHuntingSource | None = None,
    ) -> EvidenceRows: ...

    async def fetch_submission(
        self,
        assignment_id: str,
        *,
        sub_source: JobHuntingSource | None = None,
    ) -> RawSubmission: ...

    async def apply_decision(self, decision: VerificationDecision, *, verified_at: datetime) -> RawSubmission: ...


class StoreAdapter:
    """Adapter over one backing submission store."""

    domain: Domain
    sub_source: JobHuntingSource | None = None

    def __init__(self, store: SubmissionStore) -> None:
        self.store = store

    @property
    def vocabulary(self) -> StatusVocabulary:
        return vocabulary_for(self.domain, self.sub_source)

    async def fetch_pending(self, *, user_ids: Collection[str] | None = None) -> list[RawSubmission]:
        try:
            rows = await self.store.query_by_status(self.vocabulary.tokens("submitted"), user_ids=user_ids)
        except RepositoryError as exc:
            raise self._fetch_error("fetch_pending", exc) from exc
        return [self._wrap(row) for row in rows]

    async def fetch_verified_page(
        self,
        *,
        offset: int,
        limit: int,
        status: TerminalStatus = "verified",
        user_ids: Collection[str] | None = None,
    ) -> tuple[list[RawSubmission], int]:
        try:
            rows, count = await self.store.query_by_status_paged(
                self.vocabulary.tokens(status),
                offset=offset,
                limit=limit,
                user_ids=user_ids,
            )
        except RepositoryError as exc:
            raise self._fetch_error("fetch_verified_page", exc) from exc
        return [self._wrap(row) for row in rows], count

    async def fetch_evidence(
        self,
        assignment_ids: Collection[str],
        *,
        sub_source: JobHuntingSource | None = None,
    ) -> EvidenceRows:
        ids = sorted(set(assignment_ids))
        if not ids:
            return {}
        try:
            rows = await self.store.query_evidence_by_assignment_ids(ids)
        except RepositoryError as exc:
            raise self._fetch_error("fetch_evidence", exc) from exc
        fk = self.store.schema.evidence_fk
        grouped: EvidenceRows = {assignment_id: [] for assignment_id in ids}
        for row in rows:
            grouped.setdefault(str(row[fk]), []).append(row)
        return grouped

    async def fetch_submission(
        self,
        assignment_id: str,
        *,
        sub_source: JobHuntingSource | None = None,
    ) -> RawSubmission:
        try:
            row = await self.store.get_submission(assignment_id)
        except RepositoryNotFoundError as exc:
            raise AssignmentNotFoundError(
                str(exc),
                domain=self.domain,
                operation="fetch_submission",
                assignment_id=assignment_id,
            ) from exc
        except RepositoryError as exc:
            raise self._fetch_error("fetch_submission", exc, assignment_id=assignment_id) from exc
        return self._wrap(row)

    async def apply_decision(self, decision: VerificationDecision, *, verified_at: datetime) -> RawSubmission:
        terminal: TerminalStatus = "verified" if decision.action == "approve" else "rejected"
        write = DecisionWrite(
            status=self.vocabulary.write[terminal],
            evidence_status=EVIDENCE_STATUS_FOR[terminal],
            verified_at=verified_at,
            score_awarded=decision.score_awarded,
            notes=decision.notes,
            reviewer_id=decision.reviewer_id,
            approved=decision.action == "approve",
        )
        context = {"domain": self.domain, "operation": "apply_decision", "assignment_id": decision.assignment_id}
        try:
            row = await self.store.update_decision(
                decision.assignment_id,
                expected_statuses=self.vocabulary.tokens("submitted"),
                write=write,
            )
        except RepositoryNotFoundError as exc:
            raise AssignmentNotFoundError(str(exc), **context) from exc
        except RepositoryConflictError as exc:
            raise DecisionConflictError(str(exc), **context) from exc
        except RepositoryValidationError as exc:
            raise DecisionValidationError(str(exc), **context) from exc
        except RepositoryError as exc:
            logger.warning(
                "adapter write failed domain=%s operation=apply_decision assignment_id=%s error=%s",
                self.domain,
                decision.assignment_id,
                exc,
            )
            raise AdapterWriteError(str(exc), **context) from exc
        return self._wrap(row)

    def _wrap(self, row: dict[str, Any]) -> RawSubmission:
        return RawSubmission(domain=self.domain, row=row, sub_source=self.sub_source)

    def _fetch_error(
        self,
        operation: str,
        exc: RepositoryError,
        *,
        assignment_id: str | None = None,
    ) -> AdapterFetchError:
        logger.warning(
            "adapter fetch failed domain=%s operation=%s assignment_id=%s error=%s",
            self.domain,
            operation,
            assignment_id,
            exc,
        )
        return AdapterFetchError(str(exc), domain=self.domain, operation=operation, assignment_id=assignment_id)


class CareerAdapter(StoreAdapter):
    domain = "career"


class LinkedInAdapter(StoreAdapter):
    domain = "linkedin"


class GitHubAdapter(StoreAdapter):
    domain = "github"


class _JobHuntingSlice(StoreAdapter):
    domain = "job_hunting"

    def __init__(self, store: SubmissionStore, sub_source: JobHuntingSource) -> None:
        super().__init__(store)
        self.sub_source = sub_source


class JobHuntingAdapter:
    """Job-hunting assignments live in two template families.

    The dedicated job-hunting tables and the ``interview_preparation`` slice of
    the career tables; every row is tagged with the family it came from and
    writes are routed by that tag.
    """

    domain: Domain = "job_hunting"

    def __init__(self, job_hunting_store: SubmissionStore, interview_preparation_store: SubmissionStore) -> None:
        self.slices: dict[JobHuntingSource, _JobHuntingSlice] = {
            "job_hunting": _JobHuntingSlice(job_hunting_store, "job_hunting"),
            "interview_preparation": _JobHuntingSlice(interview_preparation_store, "interview_preparation"),
        }

    async def fetch_pending(self, *, user_ids: Collection[str] | None = None) -> list[RawSubmission]:
        results = await fan_out(
            "job_hunting.pending",
            {sub_source: adapter.fetch_pending(user_ids=user_ids) for sub_source, adapter in self.slices.items()},
        )
        return [row for sub_source in JOB_HUNTING_SOURCES for row in results[sub_source]]

    async def fetch_verified_page(
        self,
        *,
        offset: int,
        limit: int,
        status: TerminalStatus = "verified",
        user_ids: Collection[str] | None = None,
    ) -> tuple[list[RawSubmission], int]:
        results = await fan_out(
            "job_hunting.verified",
            {
                sub_source: adapter.fetch_verified_page(
                    offset=0,
                    limit=offset + limit,
                    status=status,
                    user_ids=user_ids,
                )
                for sub_source, adapter in self.slices.items()
            },
        )
        merged: list[RawSubmission] = []
        total = 0
        for sub_source in JOB_HUNTING_SOURCES:
            rows, count = results[sub_source]
            merged.extend(rows)
            total += count
        merged.sort(key=_verified_sort_key, reverse=True)
        return merged[offset : offset + limit], total

    async def fetch_evidence(
        self,
        assignment_ids: Collection[str],
        *,
        sub_source: JobHuntingSource | None = None,
    ) -> EvidenceRows:
        return await self.slices[sub_source or "job_hunting"].fetch_evidence(assignment_ids)

    async def fetch_submission(
        self,
        assignment_id: str,
        *,
        sub_source: JobHuntingSource | None = None,
    ) -> RawSubmission:
        if sub_source is not None:
            return await self.slices[sub_source].fetch_submission(assignment_id)

        # Untagged lookups try the dedicated family first.
        for candidate in JOB_HUNTING_SOURCES:
            try:
                return await self.slices[candidate].fetch_submission(assignment_id)
            except AssignmentNotFoundError:
                continue
        raise AssignmentNotFoundError(
            "job_hunting assignment not found",
            domain=self.domain,
            operation="fetch_submission",
            assignment_id=assignment_id,
        )

    async def apply_decision(self, decision: VerificationDecision, *, verified_at: datetime) -> RawSubmission:
        if decision.sub_source is None:
            raise DecisionValidationError(
                "job_hunting decisions require a sub_source",
                domain=self.domain,
                operation="apply_decision",
                assignment_id=decision.assignment_id,
            )
        return await self.slices[decision.sub_source].apply_decision(decision, verified_at=verified_at)


def build_adapters(stores: Mapping[str, SubmissionStore]) -> dict[Domain, SourceAdapter]:
    """Wire one adapter per domain from stores keyed by submission source."""

    return {
        "career": CareerAdapter(stores["career"]),
        "linkedin": LinkedInAdapter(stores["linkedin"]),
        "job_hunting": JobHuntingAdapter(stores["job_hunting"], stores["interview_preparation"]),
        "github": GitHubAdapter(stores["github"]),
    }


def _verified_sort_key(raw: RawSubmission) -> tuple[bool, Any]:
    verified_at = raw.row.get("verified_at")
    return verified_at is not None, verified_at or datetime.min
