"""Update and purge policies for cached metadata and snapshot artifacts."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from j_dep_resolver.exceptions import ConfigurationError


DAILY_FORMAT = "%Y%m%d"


class UpdatePolicy(BaseModel):
    """How often cached metadata and snapshots are considered stale.

    Kinds:
        - always: stale on every check
        - never: never stale once cached
        - daily: stale when the calendar date (UTC, YYYYMMDD) changed
        - interval: stale after `minutes` elapsed since the last check
    """

    kind: str = "daily"
    minutes: int = 60

    @classmethod
    def parse(cls, value: str | None) -> "UpdatePolicy":
        """Parse `always`, `never`, `daily` or `interval:N`.

        Unknown names fall back to daily.
        """
        if not value:
            return cls()
        name, _, arg = value.strip().lower().partition(":")
        if name == "interval":
            if not arg:
                return cls(kind="interval")
            try:
                return cls(kind="interval", minutes=int(arg))
            except ValueError as exc:
                raise ConfigurationError(f"Invalid update policy interval: {value}") from exc
        if name in ("always", "never", "daily"):
            return cls(kind=name)
        return cls()

    def is_stale(self, last_checked: datetime | None, now: datetime | None = None) -> bool:
        """Return True if something last checked at `last_checked` needs a refresh."""
        if last_checked is None:
            return True
        now = now or datetime.now(timezone.utc)
        if self.kind == "always":
            return True
        if self.kind == "never":
            return False
        if self.kind == "daily":
            # calendar date strings, not elapsed time
            return _utc(last_checked).strftime(DAILY_FORMAT) != _utc(now).strftime(DAILY_FORMAT)
        elapsed = abs((_utc(now) - _utc(last_checked)).total_seconds())
        return elapsed > self.minutes * 60

    def __str__(self) -> str:
        if self.kind == "interval":
            return f"interval:{self.minutes}"
        return self.kind


class PurgePolicy(BaseModel):
    """Retention rules for snapshot revisions.

    The newest `retention_count` revisions are always kept. Older revisions
    are removed, unless `purge_after_days` is positive, in which case only
    the ones older than that many days are removed.
    """

    retention_count: int = Field(default=1, ge=0)
    purge_after_days: int = Field(default=0, ge=0)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
