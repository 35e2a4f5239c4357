"""
SQLModel database models for SARA.

One row per durable record: the quota, cache and history components each
serialise their whole state into a single JSON payload keyed by record name.
"""

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Return current UTC time as naive datetime for SQLite compatibility.

    SQLite stores datetimes as strings without timezone info, so naive
    datetimes are used consistently to avoid aware/naive comparison errors.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StateRecord(SQLModel, table=True):
    """A named durable record holding one component's serialised state."""

    __tablename__ = "state_record"

    key: str = Field(primary_key=True, max_length=100, description="Record name, e.g. sara_cache")
    payload: bytes = Field(description="UTF-8 JSON document")
    updated_at: datetime = Field(default_factory=utcnow, description="Last write time")
