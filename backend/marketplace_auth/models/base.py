"""Shared column mixins."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Adds created_at / updated_at columns maintained on insert and update."""

    created_at = Column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
        comment="Row creation time",
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=_utc_now,
        onupdate=_utc_now,
        nullable=False,
        comment="Last successful write (creation or refresh)",
    )
