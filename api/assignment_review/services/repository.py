from __future__ import annotations

import asyncio
import json
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

SubmissionSource = Literal["career", "interview_preparation", "job_hunting", "linkedin", "github"]


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(frozen=True, slots=True)
class SubmissionSchema:
    """Native table layout of one backing submission store.

    Column names double as the keys of the rows handed to the normalizer, so a
    row read from ``linkedin_user_tasks`` keeps ``task_id`` and ``updated_at``
    and nests its template under ``linkedin_tasks``.
    """

    source: SubmissionSource
    submissions_table: str
    templates_table: str
    template_fk: str
    points_column: str
    submitted_at_column: str
    evidence_table: str
    evidence_fk: str
    evidence_kind_column: str
    evidence_payload_column: str
    evidence_files_column: str
    module_column: str | None = None
    category_column: str | None = None
    difficulty_column: str | None = None
    category_filter: str | None = None
    category_filter_include: bool = True
    evidence_has_verification: bool = False
    tracks_points_earned: bool = False
    points_activity_type: str | None = None


CAREER_SCHEMA = SubmissionSchema(
    source="career",
    submissions_table="career_task_assignments",
    templates_table="career_task_templates",
    template_fk="template_id",
    points_column="points_reward",
    submitted_at_column="submitted_at",
    module_column="module",
    category_column="category",
    difficulty_column="difficulty",
    category_filter="interview_preparation",
    category_filter_include=False,
    evidence_table="career_task_evidence",
    evidence_fk="assignment_id",
    evidence_kind_column="evidence_type",
    evidence_payload_column="evidence_data",
    evidence_files_column="file_urls",
    evidence_has_verification=True,
    tracks_points_earned=True,
    points_activity_type="career_assignment",
)

INTERVIEW_PREPARATION_SCHEMA = SubmissionSchema(
    source="interview_preparation",
    submissions_table="career_task_assignments",
    templates_table="career_task_templates",
    template_fk="template_id",
    points_column="points_reward",
    submitted_at_column="submitted_at",
    module_column="module",
    category_column="category",
    difficulty_column="difficulty",
    category_filter="interview_preparation",
    category_filter_include=True,
    evidence_table="career_task_evidence",
    evidence_fk="assignment_id",
    evidence_kind_column="evidence_type",
    evidence_payload_column="evidence_data",
    evidence_files_column="file_urls",
    evidence_has_verification=True,
    tracks_points_earned=True,
    points_activity_type="job_hunting_assignment",
)

JOB_HUNTING_SCHEMA = SubmissionSchema(
    source="job_hunting",
    submissions_table="job_hunting_assignments",
    templates_table="job_hunting_task_templates",
    template_fk="template_id",
    points_column="points_reward",
    submitted_at_column="submitted_at",
    category_column="category",
    difficulty_column="difficulty",
    evidence_table="job_hunting_evidence",
    evidence_fk="assignment_id",
    evidence_kind_column="evidence_type",
    evidence_payload_column="evidence_data",
    evidence_files_column="file_urls",
    evidence_has_verification=True,
    tracks_points_earned=True,
    points_activity_type="job_hunting_assignment",
)

LINKEDIN_SCHEMA = SubmissionSchema(
    source="linkedin",
    submissions_table="linkedin_user_tasks",
    templates_table="linkedin_tasks",
    template_fk="task_id",
    points_column="points_base",
    submitted_at_column="updated_at",
    evidence_table="linkedin_evidence",
    evidence_fk="user_task_id",
    evidence_kind_column="kind",
    evidence_payload_column="evidence_data",
    evidence_files_column="file_key",
    points_activity_type="linkedin_task",
)

GITHUB_SCHEMA = SubmissionSchema(
    source="github",
    submissions_table="github_user_tasks",
    templates_table="github_tasks",
    template_fk="task_id",
    points_column="points_base",
    submitted_at_column="updated_at",
    evidence_table="github_evidence",
    evidence_fk="user_task_id",
    evidence_kind_column="kind",
    evidence_payload_column="parsed_json",
    evidence_files_column="file_key",
    points_activity_type="github_task",
)

SUBMISSION_SCHEMAS: dict[SubmissionSource, SubmissionSchema] = {
    schema.source: schema
    for schema in (
        CAREER_SCHEMA,
        INTERVIEW_PREPARATION_SCHEMA,
        JOB_HUNTING_SCHEMA,
        LINKEDIN_SCHEMA,
        GITHUB_SCHEMA,
    )
}


@dataclass(slots=True)
class DecisionWrite:
    status: str
    evidence_status: str
    verified_at: datetime
    score_awarded: int
    notes: str | None
    reviewer_id: str | None
    approved: bool


class PostgresPoolManager:
    """Lazily creates one asyncpg pool per DSN and shares it between stores."""

    def __init__(self, min_pool_size: int, max_pool_size: int, command_timeout: float = 15.0) -> None:
        self.min_pool_size = min_pool_size
        self.max_pool_size = max(min_pool_size, max_pool_size)
        self.command_timeout = command_timeout
        self._pools: dict[str, asyncio.Future[asyncpg.Pool]] = {}

    async def get(self, dsn: str | None) -> asyncpg.Pool:
        if not dsn:
            raise RepositoryUnavailableError("AR_DATABASE_URL is required")

        pending = self._pools.get(dsn)
        if pending is None:
            pending = asyncio.ensure_future(self._create(dsn))
            self._pools[dsn] = pending
        try:
            return await asyncio.shield(pending)
        except RepositoryUnavailableError:
            if self._pools.get(dsn) is pending:
                del self._pools[dsn]
            raise

    async def close(self) -> None:
        pools, self._pools = self._pools, {}
        for pending in pools.values():
            if not pending.done():
                pending.cancel()
                continue
            if pending.cancelled() or pending.exception() is not None:
                continue
            await pending.result().close()

    async def _create(self, dsn: str) -> asyncpg.Pool:
        try:
            return await asyncpg.create_pool(
                dsn=dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


class PostgresStore:
    def __init__(self, *, pools: PostgresPoolManager, database_url: str | None) -> None:
        self.pools = pools
        self.database_url = database_url

    async def _get_pool(self) -> asyncpg.Pool:
        return await self.pools.get(self.database_url)

    async def _fetch(self, sql: str, *args: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        try:
            return await pool.fetch(sql, *args)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid identifier in query") from exc
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as exc:
            raise RepositoryUnavailableError(f"database query failed: {exc}") from exc

    async def _fetchval(self, sql: str, *args: Any) -> Any:
        pool = await self._get_pool()
        try:
            return await pool.fetchval(sql, *args)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid identifier in query") from exc
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as exc:
            raise RepositoryUnavailableError(f"database query failed: {exc}") from exc

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_text_list(value: Any) -> list[str]:
        if isinstance(value, str):
            stripped = value.strip()
            return [stripped] if stripped else []
        if not isinstance(value, list):
            return []
        items: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            stripped = item.strip()
            if stripped:
                items.append(stripped)
        return items

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_value(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value


class PostgresSubmissionStore(PostgresStore):
    def __init__(self, *, schema: SubmissionSchema, pools: PostgresPoolManager, database_url: str | None) -> None:
        super().__init__(pools=pools, database_url=database_url)
        self.schema = schema

    async def query_by_status(
        self,
        statuses: Collection[str],
        *,
        user_ids: Collection[str] | None = None,
    ) -> list[dict[str, Any]]:
        if user_ids is not None and not user_ids:
            return []
        s = self.schema
        rows = await self._fetch(
            f"""
            {self._select_sql()}
            where s.status::text = any($1::text[])
              and ($2::uuid[] is null or s.user_id = any($2::uuid[]))
              and {self._slice_sql()}
            order by s.{s.submitted_at_column} desc nulls last, s.id asc
            """,
            list(statuses),
            _id_list(user_ids),
        )
        return [self._submission_row_to_dict(row) for row in rows]

    async def query_by_status_paged(
        self,
        statuses: Collection[str],
        *,
        offset: int,
        limit: int,
        user_ids: Collection[str] | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        if user_ids is not None and not user_ids:
            return [], 0
        s = self.schema
        scoped_ids = _id_list(user_ids)
        page_query = self._fetch(
            f"""
            {self._select_sql()}
            where s.status::text = any($1::text[])
              and ($4::uuid[] is null or s.user_id = any($4::uuid[]))
              and {self._slice_sql()}
            order by s.verified_at desc nulls last, s.id asc
            limit $2
            offset $3
            """,
            list(statuses),
            limit,
            offset,
            scoped_ids,
        )
        count_query = self._fetchval(
            f"""
            select count(*)::int
            from {s.submissions_table} s
            join {s.templates_table} t on t.id = s.{s.template_fk}
            where s.status::text = any($1::text[])
              and ($2::uuid[] is null or s.user_id = any($2::uuid[]))
              and {self._slice_sql()}
            """,
            list(statuses),
            scoped_ids,
        )
        rows, count = await asyncio.gather(page_query, count_query)
        return [self._submission_row_to_dict(row) for row in rows], int(count or 0)

    async def get_submission(self, assignment_id: str) -> dict[str, Any]:
        rows = await self._fetch(
            f"""
            {self._select_sql()}
            where s.id = $1::uuid
              and {self._slice_sql()}
            """,
            assignment_id,
        )
        if not rows:
            raise RepositoryNotFoundError(f"{self.schema.source} assignment not found")
        return self._submission_row_to_dict(rows[0])

    async def query_evidence_by_assignment_ids(self, assignment_ids: Collection[str]) -> list[dict[str, Any]]:
        ids = sorted(set(assignment_ids))
        if not ids:
            return []
        s = self.schema
        if s.evidence_has_verification:
            verification_sql = "e.verification_status, e.verification_notes, e.verified_at"
        else:
            verification_sql = (
                "null::text as verification_status, null::text as verification_notes, "
                "null::timestamptz as verified_at"
            )
        rows = await self._fetch(
            f"""
            select
              e.id::text as id,
              e.{s.evidence_fk}::text as {s.evidence_fk},
              e.{s.evidence_kind_column}::text as {s.evidence_kind_column},
              e.{s.evidence_payload_column} as {s.evidence_payload_column},
              e.url,
              e.{s.evidence_files_column} as {s.evidence_files_column},
              {verification_sql},
              e.created_at
            from {s.evidence_table} e
            where e.{s.evidence_fk} = any($1::uuid[])
            order by e.created_at desc, e.id asc
            """,
            ids,
        )
        return [self._evidence_row_to_dict(row) for row in rows]

    async def update_decision(
        self,
        assignment_id: str,
        *,
        expected_statuses: Collection[str],
        write: DecisionWrite,
    ) -> dict[str, Any]:
        s = self.schema
        pool = await self._get_pool()
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        id_token = bind(assignment_id)
        score_token = bind(write.score_awarded)
        assignments = [
            f"status = {bind(write.status)}",
            f"verified_at = {bind(write.verified_at)}",
            f"score_awarded = {score_token}",
            f"verification_notes = {bind(write.notes)}",
            f"verified_by = {bind(write.reviewer_id)}::uuid",
        ]
        if s.tracks_points_earned:
            assignments.append(f"points_earned = {score_token}")
        expected_token = bind(list(expected_statuses))

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    updated_id = await conn.fetchval(
                        f"""
                        update {s.submissions_table} s
                        set {", ".join(assignments)}
                        where s.id = {id_token}::uuid
                          and s.status::text = any({expected_token}::text[])
                          and {self._slice_sql()}
                        returning s.id::text
                        """,
                        *params,
                    )
                    if not updated_id:
                        current_status = await conn.fetchval(
                            f"""
                            select s.status::text
                            from {s.submissions_table} s
                            join {s.templates_table} t on t.id = s.{s.template_fk}
                            where s.id = $1::uuid
                              and {self._slice_sql()}
                            """,
                            assignment_id,
                        )
                        if current_status is None:
                            raise RepositoryNotFoundError(f"{s.source} assignment not found")
                        raise RepositoryConflictError(
                            f"{s.source} assignment is {current_status}; expected one of {sorted(expected_statuses)}"
                        )

                    if s.evidence_has_verification:
                        await conn.execute(
                            f"""
                            update {s.evidence_table}
                            set
                              verification_status = $2,
                              verified_at = $3,
                              verification_notes = $4,
                              verified_by = $5::uuid
                            where {s.evidence_fk} = $1::uuid
                            """,
                            assignment_id,
                            write.evidence_status,
                            write.verified_at,
                            write.notes,
                            write.reviewer_id,
                        )

                    row = await conn.fetchrow(
                        f"""
                        {self._select_sql()}
                        where s.id = $1::uuid
                        """,
                        assignment_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError(f"{s.source} assignment not found")

                    if write.approved and write.score_awarded > 0 and s.points_activity_type:
                        await conn.execute(
                            """
                            insert into user_activity_points (
                              user_id,
                              activity_type,
                              activity_id,
                              points_earned,
                              activity_date
                            )
                            values ($1::uuid, $2, $3::uuid, $4, $5::date)
                            """,
                            row["user_id"],
                            s.points_activity_type,
                            assignment_id,
                            write.score_awarded,
                            write.verified_at.date(),
                        )
                    return self._submission_row_to_dict(row)
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError(f"decision rejected by {self.schema.source} constraints: {exc}") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid assignment id or decision payload") from exc
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as exc:
            raise RepositoryUnavailableError(f"decision update failed: {exc}") from exc

    def _select_sql(self) -> str:
        s = self.schema
        module_sql = f"t.{s.module_column}::text" if s.module_column else "null::text"
        category_sql = f"t.{s.category_column}::text" if s.category_column else "null::text"
        difficulty_sql = f"t.{s.difficulty_column}::text" if s.difficulty_column else "null::text"
        return f"""
            select
              s.id::text as id,
              s.user_id::text as user_id,
              s.{s.template_fk}::text as {s.template_fk},
              s.status::text as status,
              s.{s.submitted_at_column} as {s.submitted_at_column},
              s.verified_at,
              s.score_awarded,
              s.verification_notes,
              t.id::text as template__id,
              t.title as template__title,
              t.{s.points_column} as template__{s.points_column},
              {module_sql} as template__module,
              {category_sql} as template__category,
              {difficulty_sql} as template__difficulty,
              coalesce(t.is_active, true) as template__is_active
            from {s.submissions_table} s
            join {s.templates_table} t on t.id = s.{s.template_fk}
        """

    def _slice_sql(self) -> str:
        s = self.schema
        if not s.category_filter or not s.category_column:
            return "true"
        # Literal comes from a module constant, never from request input.
        literal = s.category_filter.replace("'", "''")
        if s.category_filter_include:
            return (
                f"exists (select 1 from {s.templates_table} ct "
                f"where ct.id = s.{s.template_fk} and ct.{s.category_column} = '{literal}')"
            )
        return (
            f"not exists (select 1 from {s.templates_table} ct "
            f"where ct.id = s.{s.template_fk} and ct.{s.category_column} = '{literal}')"
        )

    def _submission_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        s = self.schema
        template = {
            "id": row["template__id"],
            "title": row["template__title"],
            s.points_column: self._coerce_int(row[f"template__{s.points_column}"]) or 0,
            "is_active": bool(row["template__is_active"]),
        }
        if s.module_column:
            template[s.module_column] = row["template__module"]
        if s.category_column:
            template[s.category_column] = row["template__category"]
        if s.difficulty_column:
            template[s.difficulty_column] = row["template__difficulty"]
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            s.template_fk: row[s.template_fk],
            "status": row["status"],
            s.submitted_at_column: row[s.submitted_at_column],
            "verified_at": row["verified_at"],
            "score_awarded": self._coerce_int(row["score_awarded"]),
            "verification_notes": row["verification_notes"],
            s.templates_table: template,
        }

    def _evidence_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        s = self.schema
        return {
            "id": row["id"],
            s.evidence_fk: row[s.evidence_fk],
            s.evidence_kind_column: row[s.evidence_kind_column],
            s.evidence_payload_column: self._coerce_json_value(row[s.evidence_payload_column]),
            "url": self._coerce_text(row["url"]),
            s.evidence_files_column: self._coerce_text_list(row[s.evidence_files_column]),
            "verification_status": row["verification_status"],
            "verification_notes": row["verification_notes"],
            "verified_at": row["verified_at"],
            "created_at": row["created_at"],
        }


class PostgresProfileStore(PostgresStore):
    async def query_by_user_ids(self, user_ids: Sequence[str]) -> list[dict[str, Any]]:
        ids = sorted(set(user_ids))
        if not ids:
            return []
        rows = await self._fetch(
            """
            select
              user_id::text as user_id,
              full_name,
              username,
              profile_image_url
            from profiles
            where user_id = any($1::uuid[])
            """,
            ids,
        )
        return [
            {
                "user_id": row["user_id"],
                "full_name": row["full_name"],
                "username": row["username"],
                "profile_image_url": row["profile_image_url"],
            }
            for row in rows
        ]


class PostgresInstituteStore(PostgresStore):
    async def query_student_ids(self, admin_user_id: str) -> list[str]:
        rows = await self._fetch(
            """
            select distinct ua.user_id::text as user_id
            from institute_admin_assignments ia
            join user_assignments ua on ua.institute_id = ia.institute_id
            where ia.user_id = $1::uuid
              and ia.is_active
              and ua.is_active
            order by 1
            """,
            admin_user_id,
        )
        return [row["user_id"] for row in rows]


def _id_list(user_ids: Collection[str] | None) -> list[str] | None:
    if user_ids is None:
        return None
    return sorted(set(user_ids))
