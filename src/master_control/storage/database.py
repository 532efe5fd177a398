"""Engine ownership and transactional session scope."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from master_control.orchestrator.errors import PersistenceError
from master_control.storage.alembic_runner import upgrade_head
from master_control.storage.common import build_sqlite_engine
from master_control.storage.sqlmodel_models import DEFAULT_INSTANCE_ID


class Database:
    """SQLite database shared by the stores of one agent instance."""

    def __init__(
        self,
        db_path: Path,
        *,
        instance_id: str = DEFAULT_INSTANCE_ID,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.instance_id = instance_id
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise PersistenceError(f"Schema migration failed: {error}") from error

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open a session; storage errors surface as ``PersistenceError``.

        The caller commits. Anything left uncommitted is rolled back on exit.
        """

        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceError(str(error)) from error
