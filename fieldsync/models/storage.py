"""SQLite-backed table for the flat key-value store."""

import time
from sqlmodel import SQLModel, Field


class KeyValueRecord(SQLModel, table=True):
    """One JSON document per key.

    The cache and sync queue serialize everything to JSON text, so a single
    two-column table is enough to make them durable across restarts.
    """

    __tablename__ = "kv_store"

    key: str = Field(primary_key=True, max_length=512)
    value: str = Field(max_length=10000000)  # JSON serialized
    updated_at: float = Field(default_factory=time.time)
