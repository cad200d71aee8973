"""Pydantic schemas for sync triggers."""

from pydantic import BaseModel


class SyncResponse(BaseModel):
    """Summary returned by both the per-user and the all-users trigger."""
    success: bool
    synced: int
    failed: int | None = None
    offline: int | None = None
    users_total: int | None = None
    users_failed: int | None = None
    errors: list[str] | None = None
    duration_ms: int | None = None

    @classmethod
    def from_summary(cls, summary) -> "SyncResponse":
        return cls(
            success=summary.success,
            synced=summary.synced,
            failed=summary.failed,
            offline=summary.offline,
            users_total=summary.users_total,
            users_failed=summary.users_failed,
            errors=summary.errors or None,
            duration_ms=summary.duration_ms,
        )
