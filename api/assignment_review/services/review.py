from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import datetime
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from assignment_review.core.config import Settings, get_settings
from assignment_review.services.adapters import SourceAdapter, build_adapters
from assignment_review.services.cache import ViewCache
from assignment_review.services.errors import AssignmentNotFoundError
from assignment_review.services.fanout import fan_out
from assignment_review.services.models import (
    DOMAINS,
    Assignment,
    Domain,
    Evidence,
    FacetCount,
    JobHuntingSource,
    PendingFacets,
    RawSubmission,
    ReviewFilters,
    SubmitterFacet,
    TerminalStatus,
    VerifiedPage,
)
from assignment_review.services.normalizer import normalize_assignment
from assignment_review.services.repository import (
    SUBMISSION_SCHEMAS,
    PostgresInstituteStore,
    PostgresPoolManager,
    PostgresProfileStore,
    PostgresSubmissionStore,
)
from assignment_review.services.resolver import (
    EvidenceResolver,
    InstituteScopeResolver,
    InstituteStore,
    ProfileResolver,
    ProfileStore,
)
from assignment_review.services.store import build_in_memory_stores

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ReviewQueueService:
    def __init__(
        self,
        *,
        adapters: Mapping[Domain, SourceAdapter],
        profile_store: ProfileStore,
        institute_store: InstituteStore,
        cache: ViewCache,
        verified_window_pages: int = 3,
        pools: PostgresPoolManager | None = None,
    ) -> None:
        self.adapters = dict(adapters)
        self.profiles = ProfileResolver(profile_store)
        self.institutes = InstituteScopeResolver(institute_store)
        self.evidence = EvidenceResolver(self.adapters)
        self.cache = cache
        self.verified_window_pages = max(verified_window_pages, 1)
        self.pools = pools

    def adapter_for(self, domain: Domain) -> SourceAdapter:
        return self.adapters[domain]

    async def students_of(self, admin_user_id: str) -> frozenset[str]:
        return await self.institutes.student_ids(admin_user_id)

    async def list_pending(self, filters: ReviewFilters | None = None) -> list[Assignment]:
        filters = filters or ReviewFilters()
        return await self.cache.get_or_load(
            "pending",
            (filters.cache_key(),),
            lambda: self._load_pending(filters),
        )

    async def list_pending_facets(self, filters: ReviewFilters | None = None) -> PendingFacets:
        assignments = await self.list_pending(filters)
        modules = Counter(assignment.module for assignment in assignments)
        submitters: dict[str, SubmitterFacet] = {}
        for assignment in assignments:
            facet = submitters.get(assignment.user_id)
            if facet is None:
                profile = assignment.profile
                facet = SubmitterFacet(
                    user_id=assignment.user_id,
                    full_name=profile.full_name if profile else "",
                    username=profile.username if profile else "",
                    count=0,
                )
                submitters[assignment.user_id] = facet
            facet.count += 1
        return PendingFacets(
            modules=[FacetCount(value=value, count=count) for value, count in sorted(modules.items())],
            submitters=sorted(submitters.values(), key=lambda facet: (facet.full_name.lower(), facet.user_id)),
            total=len(assignments),
        )

    async def list_verified(
        self,
        page: int = 1,
        page_size: int = 20,
        filters: ReviewFilters | None = None,
        status: TerminalStatus = "verified",
    ) -> VerifiedPage:
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        filters = filters or ReviewFilters()
        return await self.cache.get_or_load(
            "verified",
            (filters.cache_key(), page, page_size, status),
            lambda: self._load_verified(page, page_size, filters, status),
        )

    async def get_evidence_for(
        self,
        domain: Domain,
        assignment_id: str,
        sub_source: JobHuntingSource | None = None,
        user_ids: frozenset[str] | None = None,
    ) -> list[Evidence]:
        assignment = await self.get_assignment(domain, assignment_id, sub_source=sub_source, user_ids=user_ids)
        index = await self.evidence.resolve([assignment])
        return index.get((domain, assignment.id), [])

    async def get_assignment(
        self,
        domain: Domain,
        assignment_id: str,
        sub_source: JobHuntingSource | None = None,
        user_ids: frozenset[str] | None = None,
    ) -> Assignment:
        raw = await self.adapter_for(domain).fetch_submission(assignment_id, sub_source=sub_source)
        assignment = normalize_assignment(raw)
        if user_ids is not None and assignment.user_id not in user_ids:
            # Out-of-scope assignments look the same as missing ones.
            raise AssignmentNotFoundError(
                f"{domain} assignment not found",
                domain=domain,
                operation="fetch_submission",
                assignment_id=assignment_id,
            )
        return assignment

    def invalidate_views(self) -> None:
        self.cache.invalidate("pending")
        self.cache.invalidate("verified")

    async def close(self) -> None:
        self.cache.clear()
        if self.pools is not None:
            await self.pools.close()

    async def _load_pending(self, filters: ReviewFilters) -> list[Assignment]:
        with tracer.start_as_current_span("review.list_pending") as span:
            domains = self._domains_for(filters)
            span.set_attribute("review.domains", list(domains))
            raw_by_domain = await fan_out(
                "pending",
                {domain: self.adapters[domain].fetch_pending(user_ids=filters.user_ids) for domain in domains},
            )

            merged: list[Assignment] = []
            for domain in domains:
                normalized = _normalize_all(raw_by_domain[domain])
                normalized.sort(key=_submitted_key, reverse=True)
                merged.extend(normalized)
            merged.sort(key=_submitted_key, reverse=True)

            await self._attach_details(merged)
            items = [assignment for assignment in merged if _matches(assignment, filters)]
            span.set_attribute("review.items", len(items))
            logger.info("pending view loaded domains=%s fetched=%s returned=%s", len(domains), len(merged), len(items))
            return items

    async def _load_verified(
        self,
        page: int,
        page_size: int,
        filters: ReviewFilters,
        status: TerminalStatus,
    ) -> VerifiedPage:
        with tracer.start_as_current_span("review.list_verified") as span:
            domains = self._domains_for(filters)
            window = max(page, self.verified_window_pages) * page_size
            span.set_attribute("review.page", page)
            span.set_attribute("review.window", window)
            results = await fan_out(
                "verified",
                {
                    domain: self.adapters[domain].fetch_verified_page(
                        offset=0,
                        limit=window,
                        status=status,
                        user_ids=filters.user_ids,
                    )
                    for domain in domains
                },
            )

            merged: list[Assignment] = []
            total_count = 0
            for domain in domains:
                rows, count = results[domain]
                merged.extend(_normalize_all(rows))
                total_count += count
            merged.sort(key=_verified_key, reverse=True)

            await self._attach_details(merged)
            matched = [assignment for assignment in merged if _matches(assignment, filters)]
            start = (page - 1) * page_size
            items = matched[start : start + page_size]
            logger.info(
                "verified view loaded status=%s page=%s page_size=%s total_count=%s returned=%s",
                status,
                page,
                page_size,
                total_count,
                len(items),
            )
            return VerifiedPage(items=items, total_count=total_count, page=page, page_size=page_size)

    async def _attach_details(self, assignments: Sequence[Assignment]) -> None:
        if not assignments:
            return
        await fan_out(
            "details",
            {
                "profiles": self.profiles.attach(assignments),
                "evidence": self.evidence.attach(assignments),
            },
        )

    def _domains_for(self, filters: ReviewFilters) -> tuple[Domain, ...]:
        if filters.user_ids is not None and not filters.user_ids:
            return ()
        if filters.domain is not None:
            return (filters.domain,)
        return tuple(domain for domain in DOMAINS if domain in self.adapters)


def _normalize_all(rows: Sequence[RawSubmission]) -> list[Assignment]:
    return [normalize_assignment(raw) for raw in rows]


def _submitted_key(assignment: Assignment) -> tuple[bool, datetime]:
    return assignment.submitted_at is not None, assignment.submitted_at or datetime.min


def _verified_key(assignment: Assignment) -> tuple[bool, datetime]:
    return assignment.verified_at is not None, assignment.verified_at or datetime.min


def _matches(assignment: Assignment, filters: ReviewFilters) -> bool:
    if filters.module and assignment.module.lower() != filters.module.strip().lower():
        return False
    if filters.user_id and assignment.user_id != filters.user_id:
        return False
    if filters.user_ids is not None and assignment.user_id not in filters.user_ids:
        return False

    profile = assignment.profile
    names = [profile.full_name.lower(), profile.username.lower()] if profile else []
    if filters.submitter_name_contains:
        needle = filters.submitter_name_contains.strip().lower()
        if not any(needle in name for name in names):
            return False
    if filters.search:
        needle = filters.search.strip().lower()
        haystack = [*names, assignment.title.lower(), assignment.category.lower()]
        if not any(needle in value for value in haystack):
            return False
    return True


def build_review_service(settings: Settings) -> ReviewQueueService:
    cache = ViewCache(
        ttl_seconds=settings.review_cache_ttl_seconds,
        max_entries=settings.review_cache_max_entries,
    )
    if settings.store_backend == "memory":
        stores = build_in_memory_stores()
        return ReviewQueueService(
            adapters=build_adapters(stores.submissions),
            profile_store=stores.profiles,
            institute_store=stores.institutes,
            cache=cache,
            verified_window_pages=settings.verified_window_pages,
        )

    pools = PostgresPoolManager(
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout=settings.database_command_timeout_seconds,
    )
    # interview_preparation shares the career tables, hence the career DSN.
    dsn_keys: dict[str, str] = {
        "career": "career",
        "interview_preparation": "career",
        "job_hunting": "job_hunting",
        "linkedin": "linkedin",
        "github": "github",
    }
    submission_stores: dict[str, Any] = {
        source: PostgresSubmissionStore(schema=schema, pools=pools, database_url=settings.dsn_for(dsn_keys[source]))
        for source, schema in SUBMISSION_SCHEMAS.items()
    }
    return ReviewQueueService(
        adapters=build_adapters(submission_stores),
        profile_store=PostgresProfileStore(pools=pools, database_url=settings.dsn_for("profile")),
        institute_store=PostgresInstituteStore(pools=pools, database_url=settings.dsn_for("institute")),
        cache=cache,
        verified_window_pages=settings.verified_window_pages,
        pools=pools,
    )


@lru_cache
def get_review_service() -> ReviewQueueService:
    return build_review_service(get_settings())
