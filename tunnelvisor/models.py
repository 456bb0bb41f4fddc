"""
Database models for tunnelvisor.

Uses Peewee ORM with SQLite. Stores a history of lifecycle events: one row
per unit action (launch, terminate, signal, hook) and one per operation.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from peewee import (
    AutoField,
    BooleanField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    IntegerField,
    Model,
    PeeweeException,
    SqliteDatabase,
    TextField,
)

logger = logging.getLogger(__name__)

database = DatabaseProxy()


def initialize_db(db_path: Path):
    """Initialize database connection and create tables."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = SqliteDatabase(
        str(db_path),
        pragmas={
            "journal_mode": "wal",
            "foreign_keys": 1,
            "busy_timeout": 5000,
        },
        check_same_thread=False,
    )
    database.initialize(db)
    database.create_tables([Event], safe=True)


def disable_history():
    """Detach the database so record_event becomes a no-op."""
    if database.obj is not None:
        database.close()
    database.initialize(None)


def is_initialized() -> bool:
    return database.obj is not None


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class Event(BaseModel):
    """A lifecycle action taken by the supervisor."""

    id = AutoField()
    operation = CharField(index=True)  # start, stop, launch, terminate, hook, reload, ...
    unit = CharField(null=True, index=True)  # None for aggregate operation rows
    pid = IntegerField(null=True)
    success = BooleanField(default=True)
    detail = TextField(null=True)
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "events"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "unit": self.unit,
            "pid": self.pid,
            "success": self.success,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


def record_event(
    operation: str,
    unit: Optional[str] = None,
    pid: Optional[int] = None,
    success: bool = True,
    detail: Optional[str] = None,
):
    """Store an event if history is enabled. Never raises."""
    if not is_initialized():
        return
    try:
        Event.create(operation=operation, unit=unit, pid=pid, success=success, detail=detail)
    except PeeweeException as e:
        logger.error(f"Failed to record {operation} event: {e}")


def recent_events(limit: int = 50, unit: Optional[str] = None) -> list[Event]:
    """Most recent events, newest first."""
    if not is_initialized():
        return []
    query = Event.select()
    if unit:
        query = query.where(Event.unit == unit)
    return list(query.order_by(Event.timestamp.desc(), Event.id.desc()).limit(limit))
