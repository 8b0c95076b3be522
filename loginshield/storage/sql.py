# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""SQL storage backend (SQLAlchemy).

One database is shared by every worker process:

  loginshield_state     - (store, key) -> JSON value, one row per key
  loginshield_revisions - per-store commit counter
  loginshield_attempts  - attempt history, indexed by (address, timestamp)

Each update is a single transaction that locks the row before the mutator
runs (SELECT ... FOR UPDATE; BEGIN IMMEDIATE on SQLite), so a
read-modify-write stays atomic across processes as well as threads.

Default URL is a SQLite file under ``loginshield.data_dir``; any SQLAlchemy
URL with row locking (e.g. PostgreSQL) works for multi-host deployments.
"""

from __future__ import annotations

import itertools
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from loginshield.core.errors import StorageUnavailable
from loginshield.login.history import AttemptLog, fold_username
from loginshield.login.models import AttemptRecord, Outcome
from loginshield.storage.keyed import KeyedStateStore, Mutator, State

logger = logging.getLogger("loginshield.storage")

DEFAULT_TIMEOUT = 10.0
_INSERT_RETRIES = 3
_WRITE_OPTION = "loginshield_write"

metadata = MetaData()

state_table = Table(
    "loginshield_state",
    metadata,
    Column("store", String(32), primary_key=True),
    Column("key", String(512), primary_key=True),
    Column("value", JSON, nullable=False),
)

revision_table = Table(
    "loginshield_revisions",
    metadata,
    Column("store", String(32), primary_key=True),
    Column("revision", Integer, nullable=False),
)

attempts_table = Table(
    "loginshield_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("address", String(64), nullable=False),
    Column("username", String(255), nullable=False),
    Column("username_key", String(255), nullable=False),
    Column("timestamp", Float, nullable=False),
    Column("outcome", String(16), nullable=False),
    Index("ix_loginshield_attempts_address_ts", "address", "timestamp"),
    Index("ix_loginshield_attempts_ts", "timestamp"),
)


class Database:
    """SQLAlchemy engine and schema for the shared backend."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Open (and if needed create) the database.

        Raises:
            StorageUnavailable: If the database cannot be opened.
        """
        self._url = make_url(url)
        self._sqlite = self._url.get_backend_name() == "sqlite"
        try:
            self._engine = self._build_engine(timeout)
            with self.transaction(write=True) as conn:
                metadata.create_all(conn)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Cannot open database %s: %s", self.display_url, exc)
            raise StorageUnavailable(f"Cannot open database {self.display_url}: {exc}") from exc
        logger.info("Database ready at %s", self.display_url)

    @property
    def display_url(self) -> str:
        return self._url.render_as_string(hide_password=True)

    @property
    def engine(self) -> Engine:
        return self._engine

    def _build_engine(self, timeout: float) -> Engine:
        if not self._sqlite:
            return create_engine(self._url, pool_pre_ping=True, pool_timeout=timeout)

        database = self._url.database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            self._url,
            connect_args={"timeout": timeout, "check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # Transactions are started explicitly in _on_begin
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            # Writers take the database write lock up front, so two
            # processes can never both read a row and then overwrite it.
            if conn.get_execution_options().get(_WRITE_OPTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

        return engine

    @contextmanager
    def transaction(self, write: bool = False) -> Iterator[Connection]:
        """Connection inside one transaction, committed on clean exit."""
        with self._engine.connect() as conn:
            if write:
                conn.execution_options(**{_WRITE_OPTION: True})
            with conn.begin():
                yield conn

    def check_health(self) -> bool:
        try:
            with self.transaction() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self._engine.dispose()


class SqlStateStore(KeyedStateStore):
    """KeyedStateStore backed by one row per key.

    With ``track_revisions`` every commit also bumps the store's revision
    row in the same transaction. That row serializes writers of the store,
    so it is only enabled where a cache depends on it (the blacklist).
    Untracked stores report a new revision on every call.
    """

    def __init__(self, database: Database, name: str, track_revisions: bool = False) -> None:
        self._db = database
        self._name = name
        self._track_revisions = track_revisions
        self._untracked = itertools.count(1)
        if track_revisions:
            self._ensure_revision_row()

    @property
    def name(self) -> str:
        return self._name

    def _key_filter(self, key: str):
        return (state_table.c.store == self._name) & (state_table.c.key == key)

    def get(self, key: str) -> Optional[State]:
        try:
            with self._db.transaction() as conn:
                row = conn.execute(select(state_table.c.value).where(self._key_filter(key))).first()
        except SQLAlchemyError as exc:
            raise self._unavailable("read", key, exc) from exc
        return row[0] if row is not None else None

    def update(self, key: str, mutator: Mutator) -> Optional[State]:
        for attempt in range(_INSERT_RETRIES):
            try:
                with self._db.transaction(write=True) as conn:
                    row = conn.execute(
                        select(state_table.c.value).where(self._key_filter(key)).with_for_update()
                    ).first()
                    new_value = mutator(row[0] if row is not None else None)
                    if new_value is None:
                        if row is not None:
                            conn.execute(state_table.delete().where(self._key_filter(key)))
                    elif row is None:
                        conn.execute(state_table.insert().values(store=self._name, key=key, value=new_value))
                    else:
                        conn.execute(state_table.update().where(self._key_filter(key)).values(value=new_value))
                    if self._track_revisions:
                        conn.execute(
                            revision_table.update()
                            .where(revision_table.c.store == self._name)
                            .values(revision=revision_table.c.revision + 1)
                        )
                return new_value
            except IntegrityError as exc:
                # Another process inserted the same key first; retry against its row
                if attempt == _INSERT_RETRIES - 1:
                    raise self._unavailable("write", key, exc) from exc
                logger.debug("[%s] Insert race on %s, retrying", self._name, key)
            except SQLAlchemyError as exc:
                raise self._unavailable("write", key, exc) from exc
        return None

    def snapshot(self) -> dict[str, State]:
        try:
            with self._db.transaction() as conn:
                rows = conn.execute(
                    select(state_table.c.key, state_table.c.value).where(state_table.c.store == self._name)
                ).all()
        except SQLAlchemyError as exc:
            raise self._unavailable("snapshot", "*", exc) from exc
        return {key: value for key, value in rows}

    def revision(self) -> int:
        if not self._track_revisions:
            return -next(self._untracked)
        try:
            with self._db.transaction() as conn:
                value = conn.execute(
                    select(revision_table.c.revision).where(revision_table.c.store == self._name)
                ).scalar()
        except SQLAlchemyError as exc:
            raise self._unavailable("revision", "*", exc) from exc
        return int(value or 0)

    def __len__(self) -> int:
        try:
            with self._db.transaction() as conn:
                return conn.execute(
                    select(func.count()).select_from(state_table).where(state_table.c.store == self._name)
                ).scalar_one()
        except SQLAlchemyError as exc:
            raise self._unavailable("count", "*", exc) from exc

    def _ensure_revision_row(self) -> None:
        try:
            with self._db.transaction(write=True) as conn:
                exists = conn.execute(
                    select(revision_table.c.revision).where(revision_table.c.store == self._name)
                ).first()
                if exists is None:
                    conn.execute(revision_table.insert().values(store=self._name, revision=0))
        except IntegrityError:
            logger.debug("[%s] Revision row created concurrently", self._name)
        except SQLAlchemyError as exc:
            raise self._unavailable("init", "*", exc) from exc

    def _unavailable(self, operation: str, key: str, exc: Exception) -> StorageUnavailable:
        logger.error("[%s] %s failed for %s: %s", self._name, operation, key, exc)
        return StorageUnavailable(f"{self._name} {operation} failed: {exc}")


class SqlAttemptLog(AttemptLog):
    """AttemptLog backed by an indexed table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def append(self, record: AttemptRecord) -> None:
        try:
            with self._db.transaction(write=True) as conn:
                conn.execute(attempts_table.insert().values(
                    address=record.remote_address,
                    username=record.username,
                    username_key=fold_username(record.username),
                    timestamp=record.timestamp,
                    outcome=record.outcome.value,
                ))
        except SQLAlchemyError as exc:
            logger.error("Attempt for %s not stored: %s", record.remote_address, exc)
            raise StorageUnavailable(f"attempts write failed: {exc}") from exc

    def count_failures(
        self,
        address: str,
        since: float,
        until: float,
        username: Optional[str] = None,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(attempts_table)
            .where(
                attempts_table.c.address == address,
                attempts_table.c.timestamp >= since,
                attempts_table.c.timestamp <= until,
                attempts_table.c.outcome == Outcome.FAILURE.value,
            )
        )
        if username is not None:
            stmt = stmt.where(attempts_table.c.username_key == fold_username(username))
        try:
            with self._db.transaction() as conn:
                return conn.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"attempts count failed: {exc}") from exc

    def records(self, address: str) -> list[AttemptRecord]:
        stmt = (
            select(
                attempts_table.c.address,
                attempts_table.c.username,
                attempts_table.c.timestamp,
                attempts_table.c.outcome,
            )
            .where(attempts_table.c.address == address)
            .order_by(attempts_table.c.timestamp, attempts_table.c.id)
        )
        try:
            with self._db.transaction() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"attempts read failed: {exc}") from exc
        return [AttemptRecord(a, u, float(ts), Outcome(o)) for a, u, ts, o in rows]

    def prune(self, older_than: float) -> int:
        try:
            with self._db.transaction(write=True) as conn:
                result = conn.execute(
                    attempts_table.delete().where(attempts_table.c.timestamp < older_than)
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"attempts prune failed: {exc}") from exc
        return result.rowcount or 0

    def __len__(self) -> int:
        try:
            with self._db.transaction() as conn:
                return conn.execute(select(func.count()).select_from(attempts_table)).scalar_one()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"attempts count failed: {exc}") from exc
