"""
Repository pattern for data access.

Handles cost profile persistence. All spend accounting goes through
atomic SQL increments; no method performs a read-modify-write of cost_used.
"""

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    CostProfile,
    SubscriptionTier,
    cost_to_nanos,
    format_timestamp,
    nanos_to_cost,
    parse_timestamp,
)

_SELECT_PROFILE = """
    SELECT user_id, subscription_tier, cost_used_nanos,
           billing_cycle_start, last_request_at, image_gens_count
    FROM cost_profile
"""

# Fields that update_profile may touch, mapped to their column names
_UPDATABLE_FIELDS = {
    "subscription_tier": "subscription_tier",
    "cost_used": "cost_used_nanos",
    "billing_cycle_start": "billing_cycle_start",
    "last_request_at": "last_request_at",
    "image_gens_count": "image_gens_count",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_profile(row: tuple) -> CostProfile:
    cycle_start = parse_timestamp(row[3])
    if cycle_start is None:
        raise ValueError(f"Profile {row[0]!r} has no readable billing_cycle_start")
    return CostProfile(
        user_id=row[0],
        subscription_tier=SubscriptionTier.parse(row[1]),
        cost_used=nanos_to_cost(row[2] or 0),
        billing_cycle_start=cycle_start,
        last_request_at=parse_timestamp(row[4]),
        image_gens_count=row[5] or 0,
    )


class CostProfileRepository:
    """Repository for per-user cost profiles.

    Each method opens its own connection, so reads always observe the
    latest committed state and the repository is safe to share between
    threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the cost_profile table if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cost_profile (
                    user_id TEXT PRIMARY KEY,
                    subscription_tier TEXT NOT NULL DEFAULT 'free',
                    cost_used_nanos INTEGER NOT NULL DEFAULT 0
                        CHECK (cost_used_nanos >= 0),
                    billing_cycle_start TEXT NOT NULL,
                    last_request_at TEXT,
                    image_gens_count INTEGER NOT NULL DEFAULT 0
                        CHECK (image_gens_count >= 0)
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def create_profile(
        self,
        user_id: str,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        now: Optional[datetime] = None,
    ) -> CostProfile:
        """Create a zeroed profile the first time a user is seen.

        Existing profiles are left untouched and returned as stored.

        Raises:
            ValueError: If user_id is empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR IGNORE INTO cost_profile
                (user_id, subscription_tier, cost_used_nanos, billing_cycle_start,
                 last_request_at, image_gens_count)
                VALUES (?, ?, 0, ?, NULL, 0)
            """, (user_id, tier.value, format_timestamp(now or _utcnow())))
            conn.commit()
        finally:
            conn.close()

        profile = self.get_profile(user_id)
        if profile is None:
            raise LookupError(f"Profile for {user_id} was not found after insert")
        return profile

    def get_profile(self, user_id: str) -> Optional[CostProfile]:
        """Fetch the current profile for a user, or None if absent."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(_SELECT_PROFILE + " WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return _row_to_profile(row)

    def list_profiles(self, limit: int = 1000) -> List[CostProfile]:
        """List profiles ordered by spend, highest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                _SELECT_PROFILE + " ORDER BY cost_used_nanos DESC, user_id LIMIT ?",
                (limit,),
            )
            return [_row_to_profile(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def update_profile(self, user_id: str, **fields: Any) -> bool:
        """Overwrite selected profile fields.

        Intended for the billing side (tier changes, cycle resets). Spend
        accounting must use add_cost instead.

        Returns:
            True if a profile was updated, False if the user does not exist

        Raises:
            ValueError: If an unknown field or invalid value is supplied
        """
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown}")
        if not fields:
            return self.get_profile(user_id) is not None

        assignments = []
        params: List[Any] = []
        for name, value in fields.items():
            assignments.append(f"{_UPDATABLE_FIELDS[name]} = ?")
            params.append(_to_column_value(name, value))
        params.append(user_id)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE cost_profile SET {', '.join(assignments)} WHERE user_id = ?",
                params,
            )
            conn.commit()
            return cursor.rowcount > 0
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def add_cost(
        self,
        user_id: str,
        delta: Decimal,
        image_increment: int = 0,
        now: Optional[datetime] = None,
    ) -> bool:
        """Atomically add a charge to a user's spend.

        The increment happens inside a single UPDATE statement, so
        concurrent charges for the same user are never lost.

        Args:
            user_id: User to charge
            delta: Non-negative amount to add
            image_increment: Number of completed image generations to record
            now: Completion time; last_request_at only moves forward

        Returns:
            True if the profile exists and was charged

        Raises:
            ValueError: If delta or image_increment is negative
        """
        if delta < 0:
            raise ValueError("delta cannot be negative")
        if image_increment < 0:
            raise ValueError("image_increment cannot be negative")
        stamp = format_timestamp(now or _utcnow())

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE cost_profile
                SET cost_used_nanos = cost_used_nanos + ?,
                    image_gens_count = image_gens_count + ?,
                    last_request_at = CASE
                        WHEN last_request_at > ? THEN last_request_at
                        ELSE ?
                    END
                WHERE user_id = ?
            """, (
                cost_to_nanos(delta),
                image_increment,
                stamp,
                stamp,
                user_id,
            ))
            conn.commit()
            return cursor.rowcount > 0
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def claim_request_slot(
        self, user_id: str, now: datetime, not_before: datetime
    ) -> Optional[bool]:
        """Stamp last_request_at if the previous request is old enough.

        Runs as a single write transaction, so of two concurrent requests
        only one can claim the slot. Unreadable stored timestamps count as
        no prior request.

        Args:
            user_id: User making the request
            now: Timestamp to store
            not_before: The stored timestamp must be at or before this value

        Returns:
            True if the slot was claimed, False if a recent request holds it,
            None if the user has no profile
        """
        conn = get_connection(self.db_path)
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT last_request_at FROM cost_profile WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return None
            previous = parse_timestamp(row[0])
            if previous is not None and previous > not_before:
                conn.execute("ROLLBACK")
                return False
            conn.execute(
                "UPDATE cost_profile SET last_request_at = ? WHERE user_id = ?",
                (format_timestamp(now), user_id),
            )
            conn.execute("COMMIT")
            return True
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def set_subscription_tier(self, user_id: str, tier: SubscriptionTier) -> bool:
        """Change a user's plan. Used by the billing/upgrade flow."""
        return self.update_profile(user_id, subscription_tier=tier)

    def reset_billing_cycle(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """Zero the spend accumulator and start a new billing cycle."""
        return self.update_profile(
            user_id,
            cost_used=Decimal("0"),
            billing_cycle_start=now or _utcnow(),
        )


def _to_column_value(name: str, value: Any) -> Any:
    """Convert a CostProfile field value to its stored representation."""
    if name == "subscription_tier":
        return SubscriptionTier(value).value
    if name == "cost_used":
        cost = Decimal(value)
        if cost < 0:
            raise ValueError("cost_used cannot be negative")
        return cost_to_nanos(cost)
    if name in ("billing_cycle_start", "last_request_at"):
        return None if value is None else format_timestamp(value)
    if name == "image_gens_count":
        if int(value) < 0:
            raise ValueError("image_gens_count cannot be negative")
        return int(value)
    return value


def get_repository(db_path: str = DEFAULT_DB_PATH) -> CostProfileRepository:
    """Create a repository bound to db_path with its schema in place.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of CostProfileRepository
    """
    repository = CostProfileRepository(db_path)
    repository.initialize_schema()
    return repository
