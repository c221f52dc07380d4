from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol

from assignment_review.services.adapters import SourceAdapter
from assignment_review.services.errors import AdapterFetchError
from assignment_review.services.fanout import fan_out
from assignment_review.services.models import Assignment, Domain, Evidence, JobHuntingSource, Profile
from assignment_review.services.normalizer import normalize_evidence, normalize_profile
from assignment_review.services.repository import RepositoryError

logger = logging.getLogger(__name__)


class ProfileStore(Protocol):
    async def query_by_user_ids(self, user_ids: Sequence[str]) -> list[dict[str, Any]]: ...


class ProfileResolver:
    """One batched profile lookup for every user in a result set."""

    def __init__(self, store: ProfileStore) -> None:
        self.store = store

    async def resolve(self, user_ids: Iterable[str]) -> dict[str, Profile]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        try:
            rows = await self.store.query_by_user_ids(ids)
        except RepositoryError as exc:
            logger.warning("profile lookup failed operation=resolve_profiles users=%s error=%s", len(ids), exc)
            raise AdapterFetchError(str(exc), operation="resolve_profiles") from exc

        profiles = {profile.user_id: profile for profile in map(normalize_profile, rows)}
        missing = [user_id for user_id in ids if user_id not in profiles]
        if missing:
            logger.info("profiles missing, using placeholders count=%s", len(missing))
        for user_id in missing:
            profiles[user_id] = Profile.placeholder(user_id)
        return profiles

    async def attach(self, assignments: Sequence[Assignment]) -> None:
        profiles = await self.resolve(assignment.user_id for assignment in assignments)
        for assignment in assignments:
            assignment.profile = profiles[assignment.user_id]


class InstituteStore(Protocol):
    async def query_student_ids(self, admin_user_id: str) -> list[str]: ...


class InstituteScopeResolver:
    """Students an institute admin may review: every active member of the institutes they administer."""

    def __init__(self, store: InstituteStore) -> None:
        self.store = store

    async def student_ids(self, admin_user_id: str) -> frozenset[str]:
        try:
            rows = await self.store.query_student_ids(admin_user_id)
        except RepositoryError as exc:
            logger.warning("institute scope lookup failed operation=resolve_institute_scope error=%s", exc)
            raise AdapterFetchError(str(exc), operation="resolve_institute_scope") from exc
        return frozenset(rows)


EvidenceGroup = tuple[Domain, JobHuntingSource | None]


class EvidenceResolver:
    """One batched evidence lookup per backing store, indexed by assignment id."""

    def __init__(self, adapters: Mapping[Domain, SourceAdapter]) -> None:
        self.adapters = adapters

    async def resolve(self, assignments: Sequence[Assignment]) -> dict[tuple[Domain, str], list[Evidence]]:
        groups: dict[EvidenceGroup, list[str]] = defaultdict(list)
        for assignment in assignments:
            groups[(assignment.domain, assignment.sub_source)].append(assignment.id)

        results = await fan_out(
            "evidence",
            {
                group: self.adapters[group[0]].fetch_evidence(ids, sub_source=group[1])
                for group, ids in groups.items()
            },
        )

        index: dict[tuple[Domain, str], list[Evidence]] = {}
        for (domain, sub_source), rows_by_id in results.items():
            for assignment_id, rows in rows_by_id.items():
                evidence = [normalize_evidence(domain, row, sub_source) for row in rows]
                index[(domain, assignment_id)] = latest_first(evidence)
        return index

    async def attach(self, assignments: Sequence[Assignment]) -> None:
        index = await self.resolve(assignments)
        for assignment in assignments:
            assignment.evidence = index.get((assignment.domain, assignment.id), [])


def latest_first(evidence: Iterable[Evidence]) -> list[Evidence]:
    ordered = list(evidence)
    ordered.sort(key=lambda item: (item.submitted_at is not None, item.submitted_at or datetime.min), reverse=True)
    return ordered
