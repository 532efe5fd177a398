"""Audit trail sinks.

Recording is fire-and-forget: a sink that cannot store an entry logs the
problem and returns, so auditing never breaks task processing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any, Protocol

from sqlmodel import col, select

from master_control.orchestrator.errors import PersistenceError
from master_control.orchestrator.models import AuditEntry
from master_control.storage.common import (
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from master_control.storage.database import Database
from master_control.storage.sqlmodel_models import AuditLogRow

logger = logging.getLogger(__name__)

AUDIT_LEVELS: tuple[str, ...] = ("debug", "info", "warn", "error", "critical")
DEFAULT_AUDIT_SOURCE = "master-control"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class AuditSink(Protocol):
    def record(self, level: str, message: str, data: dict[str, Any] | None = None) -> None: ...


class AuditReader(Protocol):
    def recent(self, limit: int = 100) -> list[AuditEntry]: ...


class LoggingAuditSink:
    """Writes audit entries to the ``master_control.audit`` logger."""

    def __init__(self, logger_name: str = "master_control.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    def record(self, level: str, message: str, data: dict[str, Any] | None = None) -> None:
        self._logger.log(
            _LOG_LEVELS.get(level, logging.INFO),
            "%s %s",
            message,
            dump_json(data or {}),
        )


class RepositoryAuditSink:
    """Persists audit entries in the ``audit_log`` table."""

    def __init__(
        self,
        database: Database,
        *,
        source: str = DEFAULT_AUDIT_SOURCE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.instance_id = database.instance_id
        self.source = source
        self._clock = clock

    def record(self, level: str, message: str, data: dict[str, Any] | None = None) -> None:
        if level not in _LOG_LEVELS:
            level = "info"
        try:
            with self.database.session() as session:
                session.add(
                    AuditLogRow(
                        instance_id=self.instance_id,
                        level=level,
                        message=message,
                        data_json=dump_json(data) if data else None,
                        source=self.source,
                        created_at=to_db_datetime(self._clock()),
                    ),
                )
                session.commit()
        except PersistenceError:
            logger.exception("Failed to persist audit entry: %s", message)

    def recent(self, limit: int = 100) -> list[AuditEntry]:
        """Newest entries first."""

        with self.database.session() as session:
            rows = session.exec(
                select(AuditLogRow)
                .where(AuditLogRow.instance_id == self.instance_id)
                .order_by(col(AuditLogRow.created_at).desc(), col(AuditLogRow.id).desc())
                .limit(max(0, limit)),
            ).all()
        return [
            AuditEntry(
                entry_id=row.id or 0,
                level=row.level,
                message=row.message,
                data=load_json(row.data_json, default={}),
                source=row.source,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]


class CompositeAuditSink:
    """Fans each entry out to several sinks."""

    def __init__(self, sinks: Sequence[AuditSink]) -> None:
        self.sinks = tuple(sinks)

    def record(self, level: str, message: str, data: dict[str, Any] | None = None) -> None:
        for sink in self.sinks:
            sink.record(level, message, data)
