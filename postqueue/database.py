"""
Async persistence adapter for the ``scheduled_posts`` table.

ALL database operations go through the SupabaseDB class defined here.
No direct Supabase calls should appear anywhere else in the codebase.

Every status transition that matters for correctness (claim, settle,
cancel, re-arm) is a single conditional ``UPDATE ... WHERE status IN (...)``
whose returned rows tell the caller whether it won.  PostgREST returns the
updated representation by default, so an empty ``result.data`` means the
row was missing or no longer in an expected status.

Usage::

    from postqueue.database import SupabaseDB

    db = await SupabaseDB.create()
    row = await db.claim_job(job_id, now, ["approved", "pending_approval"])
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from supabase import AsyncClient, create_async_client

from postqueue.exceptions import DatabaseError, ValidationError

logger = logging.getLogger(__name__)

JOBS_TABLE = "scheduled_posts"


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Args:
        value: The value to check.
        name: Human-readable field name used in error messages.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def _iso(value: datetime) -> str:
    return value.isoformat()


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str  # service_role key for full server-side access

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Async row store for scheduled post jobs.

    **Important:** Use the :meth:`create` factory method in production --
    the underlying async client requires an ``await`` during
    initialisation.  Tests pass any object exposing the same query-builder
    surface to ``__init__``.
    """

    def __init__(self, client: AsyncClient) -> None:
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    def _jobs(self):
        return self.client.table(JOBS_TABLE)

    # -----------------------------------------------------------------
    # CREATE / READ
    # -----------------------------------------------------------------

    async def insert_job(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a job row.

        Args:
            row: Row dict.  Must contain ``user_id``, ``content``,
                ``scheduled_at`` and ``status``.

        Returns:
            The inserted row as returned by the database.

        Raises:
            ValidationError: On missing / invalid fields.
            DatabaseError: When the insert returns no data.
        """
        if not row:
            raise ValidationError("job row cannot be None or empty")

        missing = {"user_id", "content", "scheduled_at", "status"} - set(row.keys())
        if missing:
            raise ValidationError(f"job row missing required fields: {sorted(missing)}")
        validate_not_empty(row["content"], "content")

        result = await self._jobs().insert(row).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]

    async def get_job(
        self, job_id: str, user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Fetch one job row, optionally scoped to its owner."""
        validate_not_empty(job_id, "job_id")

        query = self._jobs().select("*").eq("id", job_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        result = await query.limit(1).execute()
        return result.data[0] if result.data else None

    async def get_due_jobs(
        self,
        now: datetime,
        statuses: Iterable[str],
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Jobs in *statuses* with ``scheduled_at <= now``, oldest first."""
        validate_positive(limit, "limit")

        result = await (
            self._jobs()
            .select("*")
            .in_("status", list(statuses))
            .lte("scheduled_at", _iso(now))
            .order("scheduled_at", desc=False)
            .limit(limit)
            .execute()
        )
        return result.data

    async def find_jobs_in_window(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        statuses: Iterable[str],
        exclude_job_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """User's jobs in *statuses* with ``scheduled_at`` in the closed window."""
        validate_not_empty(user_id, "user_id")

        query = (
            self._jobs()
            .select("id, scheduled_at, content")
            .eq("user_id", user_id)
            .in_("status", list(statuses))
            .gte("scheduled_at", _iso(window_start))
            .lte("scheduled_at", _iso(window_end))
        )
        if exclude_job_id:
            query = query.neq("id", exclude_job_id)

        result = await query.order("scheduled_at", desc=False).execute()
        return result.data

    # -----------------------------------------------------------------
    # CONDITIONAL TRANSITIONS
    # -----------------------------------------------------------------

    async def claim_job(
        self,
        job_id: str,
        now: datetime,
        claimable_statuses: Iterable[str],
    ) -> Optional[Dict[str, Any]]:
        """Atomically claim a due job for processing.

        Transitions the job to ``"processing"`` only if it is still in one
        of *claimable_statuses*, clearing the previous error.

        Returns:
            The claimed row, or ``None`` when another worker got there first
            (or the job left the claimable set).
        """
        validate_not_empty(job_id, "job_id")

        result = await (
            self._jobs()
            .update({
                "status": "processing",
                "claimed_at": _iso(now),
                "error": None,
                "updated_at": _iso(now),
            })
            .eq("id", job_id)
            .in_("status", list(claimable_statuses))
            .execute()
        )
        # If data is returned, the update matched and the claim succeeded
        return result.data[0] if result.data else None

    async def transition_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        from_statuses: Iterable[str],
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Conditionally update a job that is still in one of *from_statuses*.

        Returns:
            The updated row, or ``None`` when the condition did not match.
        """
        validate_not_empty(job_id, "job_id")
        if not fields:
            raise ValidationError("fields cannot be empty")

        query = (
            self._jobs()
            .update(fields)
            .eq("id", job_id)
            .in_("status", list(from_statuses))
        )
        if user_id is not None:
            query = query.eq("user_id", user_id)

        result = await query.execute()
        return result.data[0] if result.data else None

    async def settle_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_status: str = "processing",
    ) -> bool:
        """Write a claimed job's outcome, conditional on it still being claimed.

        Returns:
            ``True`` if the row was updated.
        """
        row = await self.transition_job(job_id, fields, [expected_status])
        return row is not None

    async def reset_failed_jobs(
        self,
        fields: Dict[str, Any],
        job_ids: Optional[List[str]] = None,
        limit: int = 100,
    ) -> List[str]:
        """Re-arm failed jobs in bulk (operator recovery).

        Args:
            fields: Fields to write on every matched job.
            job_ids: Restrict to these ids; ``None`` means any failed job.
            limit: Maximum number of jobs to reset.

        Returns:
            Ids of the jobs actually reset.
        """
        validate_positive(limit, "limit")

        query = self._jobs().select("id").eq("status", "failed")
        if job_ids is not None:
            if not job_ids:
                return []
            query = query.in_("id", job_ids)
        candidates = await query.order("updated_at", desc=False).limit(limit).execute()

        reset_ids: List[str] = []
        for row in candidates.data:
            updated = await self.transition_job(row["id"], fields, ["failed"])
            if updated is not None:
                reset_ids.append(row["id"])
        return reset_ids

    # -----------------------------------------------------------------
    # AGGREGATION
    # -----------------------------------------------------------------

    async def get_status_rows(self) -> List[Dict[str, Any]]:
        """Just the ``status`` column of every job (for per-status counts)."""
        result = await self._jobs().select("status").execute()
        return result.data

    async def get_oldest_due(self, statuses: Iterable[str]) -> Optional[Dict[str, Any]]:
        result = await (
            self._jobs()
            .select("id, scheduled_at")
            .in_("status", list(statuses))
            .order("scheduled_at", desc=False)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def count_failures_since(self, since: datetime) -> int:
        result = await (
            self._jobs()
            .select("id")
            .eq("status", "failed")
            .gte("updated_at", _iso(since))
            .execute()
        )
        return len(result.data)

    async def get_stuck_jobs(self, claimed_before: datetime) -> List[Dict[str, Any]]:
        """Jobs still ``processing`` whose claim is older than *claimed_before*."""
        result = await (
            self._jobs()
            .select("*")
            .eq("status", "processing")
            .lte("claimed_at", _iso(claimed_before))
            .order("claimed_at", desc=False)
            .execute()
        )
        return result.data


__all__ = [
    "JOBS_TABLE",
    "validate_not_empty",
    "validate_positive",
    "SupabaseConfig",
    "SupabaseDB",
]
