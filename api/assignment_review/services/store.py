from __future__ import annotations

import copy
from collections import Counter
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from assignment_review.services.repository import (
    CAREER_SCHEMA,
    GITHUB_SCHEMA,
    INTERVIEW_PREPARATION_SCHEMA,
    JOB_HUNTING_SCHEMA,
    LINKEDIN_SCHEMA,
    DecisionWrite,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SubmissionSchema,
    SubmissionSource,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(slots=True)
class InMemoryTables:
    templates: dict[str, dict[str, Any]] = field(default_factory=dict)
    submissions: dict[str, dict[str, Any]] = field(default_factory=dict)
    evidence: dict[str, dict[str, Any]] = field(default_factory=dict)
    points_ledger: list[dict[str, Any]] = field(default_factory=list)


class InMemorySubmissionStore:
    """Dict-backed store with the same contract as PostgresSubmissionStore."""

    def __init__(self, schema: SubmissionSchema, tables: InMemoryTables | None = None) -> None:
        self.schema = schema
        self.tables = tables or InMemoryTables()
        self.calls: Counter[str] = Counter()
        self.fail_with: RepositoryError | None = None

    def add_template(self, template: dict[str, Any]) -> None:
        self.tables.templates[template["id"]] = dict(template)

    def add_submission(self, row: dict[str, Any]) -> None:
        self.tables.submissions[row["id"]] = dict(row)

    def add_evidence(self, row: dict[str, Any]) -> None:
        self.tables.evidence[row["id"]] = dict(row)

    async def query_by_status(
        self,
        statuses: Collection[str],
        *,
        user_ids: Collection[str] | None = None,
    ) -> list[dict[str, Any]]:
        self._record_call("query_by_status")
        rows = [row for row in self._slice_rows(user_ids) if row["status"] in set(statuses)]
        self._sort_desc(rows, self.schema.submitted_at_column)
        return [self._join(row) for row in rows]

    async def query_by_status_paged(
        self,
        statuses: Collection[str],
        *,
        offset: int,
        limit: int,
        user_ids: Collection[str] | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        self._record_call("query_by_status_paged")
        rows = [row for row in self._slice_rows(user_ids) if row["status"] in set(statuses)]
        self._sort_desc(rows, "verified_at")
        return [self._join(row) for row in rows[offset : offset + limit]], len(rows)

    async def get_submission(self, assignment_id: str) -> dict[str, Any]:
        self._record_call("get_submission")
        row = self._find(assignment_id)
        if row is None:
            raise RepositoryNotFoundError(f"{self.schema.source} assignment not found")
        return self._join(row)

    async def query_evidence_by_assignment_ids(self, assignment_ids: Collection[str]) -> list[dict[str, Any]]:
        self._record_call("query_evidence_by_assignment_ids")
        wanted = set(assignment_ids)
        if not wanted:
            return []
        fk = self.schema.evidence_fk
        rows = [copy.deepcopy(row) for row in self.tables.evidence.values() if row.get(fk) in wanted]
        rows.sort(key=lambda row: row["id"])
        rows.sort(key=lambda row: row.get("created_at") or _EPOCH, reverse=True)
        return rows

    async def update_decision(
        self,
        assignment_id: str,
        *,
        expected_statuses: Collection[str],
        write: DecisionWrite,
    ) -> dict[str, Any]:
        self._record_call("update_decision")
        s = self.schema
        row = self._find(assignment_id)
        if row is None:
            raise RepositoryNotFoundError(f"{s.source} assignment not found")
        if row["status"] not in set(expected_statuses):
            raise RepositoryConflictError(
                f"{s.source} assignment is {row['status']}; expected one of {sorted(expected_statuses)}"
            )
        if write.score_awarded < 0:
            raise RepositoryValidationError(f"decision rejected by {s.source} constraints: negative score_awarded")

        row["status"] = write.status
        row["verified_at"] = write.verified_at
        row["score_awarded"] = write.score_awarded
        row["verification_notes"] = write.notes
        row["verified_by"] = write.reviewer_id
        if s.tracks_points_earned:
            row["points_earned"] = write.score_awarded

        if s.evidence_has_verification:
            for evidence in self.tables.evidence.values():
                if evidence.get(s.evidence_fk) != assignment_id:
                    continue
                evidence["verification_status"] = write.evidence_status
                evidence["verified_at"] = write.verified_at
                evidence["verification_notes"] = write.notes

        if write.approved and write.score_awarded > 0 and s.points_activity_type:
            self.tables.points_ledger.append(
                {
                    "user_id": row["user_id"],
                    "activity_type": s.points_activity_type,
                    "activity_id": assignment_id,
                    "points_earned": write.score_awarded,
                    "activity_date": write.verified_at.date(),
                }
            )
        return self._join(row)

    def _record_call(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.fail_with is not None:
            raise self.fail_with

    def _find(self, assignment_id: str) -> dict[str, Any] | None:
        row = self.tables.submissions.get(assignment_id)
        if row is None or not self._in_slice(row):
            return None
        return row

    def _slice_rows(self, user_ids: Collection[str] | None = None) -> list[dict[str, Any]]:
        rows = [row for row in self.tables.submissions.values() if self._in_slice(row)]
        if user_ids is None:
            return rows
        allowed = set(user_ids)
        return [row for row in rows if row["user_id"] in allowed]

    def _in_slice(self, row: dict[str, Any]) -> bool:
        s = self.schema
        template = self.tables.templates.get(row.get(s.template_fk))
        if template is None:
            return False
        if not s.category_filter or not s.category_column:
            return True
        matches = template.get(s.category_column) == s.category_filter
        return matches if s.category_filter_include else not matches

    def _join(self, row: dict[str, Any]) -> dict[str, Any]:
        s = self.schema
        joined = copy.deepcopy(row)
        joined[s.templates_table] = copy.deepcopy(self.tables.templates[row[s.template_fk]])
        return joined

    @staticmethod
    def _sort_desc(rows: list[dict[str, Any]], column: str) -> None:
        rows.sort(key=lambda row: row["id"])
        rows.sort(key=lambda row: (row.get(column) is not None, row.get(column) or _EPOCH), reverse=True)


class InMemoryProfileStore:
    def __init__(self, profiles: Sequence[dict[str, Any]] = ()) -> None:
        self.profiles: dict[str, dict[str, Any]] = {row["user_id"]: dict(row) for row in profiles}
        self.calls: Counter[str] = Counter()
        self.fail_with: RepositoryError | None = None

    def add_profile(self, row: dict[str, Any]) -> None:
        self.profiles[row["user_id"]] = dict(row)

    async def query_by_user_ids(self, user_ids: Sequence[str]) -> list[dict[str, Any]]:
        self.calls["query_by_user_ids"] += 1
        if self.fail_with is not None:
            raise self.fail_with
        return [dict(self.profiles[user_id]) for user_id in sorted(set(user_ids)) if user_id in self.profiles]


class InMemoryInstituteStore:
    """Institute memberships as (user_id, institute_id, is_active) rows."""

    def __init__(self) -> None:
        self.admins: list[tuple[str, str, bool]] = []
        self.students: list[tuple[str, str, bool]] = []
        self.calls: Counter[str] = Counter()
        self.fail_with: RepositoryError | None = None

    def add_admin(self, user_id: str, institute_id: str, *, is_active: bool = True) -> None:
        self.admins.append((user_id, institute_id, is_active))

    def add_student(self, user_id: str, institute_id: str, *, is_active: bool = True) -> None:
        self.students.append((user_id, institute_id, is_active))

    async def query_student_ids(self, admin_user_id: str) -> list[str]:
        self.calls["query_student_ids"] += 1
        if self.fail_with is not None:
            raise self.fail_with
        institutes = {institute for user_id, institute, active in self.admins if user_id == admin_user_id and active}
        return sorted({user_id for user_id, institute, active in self.students if institute in institutes and active})


@dataclass(slots=True)
class InMemoryStores:
    submissions: dict[SubmissionSource, InMemorySubmissionStore]
    profiles: InMemoryProfileStore
    institutes: InMemoryInstituteStore = field(default_factory=InMemoryInstituteStore)


def build_in_memory_stores() -> InMemoryStores:
    """Career and interview-preparation share tables, as they do in Postgres."""

    career_tables = InMemoryTables()
    return InMemoryStores(
        submissions={
            "career": InMemorySubmissionStore(CAREER_SCHEMA, career_tables),
            "interview_preparation": InMemorySubmissionStore(INTERVIEW_PREPARATION_SCHEMA, career_tables),
            "job_hunting": InMemorySubmissionStore(JOB_HUNTING_SCHEMA),
            "linkedin": InMemorySubmissionStore(LINKEDIN_SCHEMA),
            "github": InMemorySubmissionStore(GITHUB_SCHEMA),
        },
        profiles=InMemoryProfileStore(),
    )
