"""Storage backends: task definition source, round log sink and report settings.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for the full record payloads.
- Upsert: INSERT that updates the existing row on primary-key conflict.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import ReportConfig, RoundLog, TaskDefinition


class RoundStorage(Protocol):
    def migrate(self) -> None: ...

    def save_task(self, task: TaskDefinition) -> TaskDefinition: ...

    def get_task(self, task_id: str) -> TaskDefinition | None: ...

    def list_tasks(self) -> list[TaskDefinition]: ...

    def delete_task(self, task_id: str) -> bool: ...

    def save_round(self, log: RoundLog) -> None: ...

    def get_round(self, round_id: str) -> RoundLog | None: ...

    def list_rounds(self) -> list[RoundLog]: ...

    def get_settings(self) -> ReportConfig: ...

    def save_settings(self, config: ReportConfig) -> ReportConfig: ...


class InMemoryRoundStorage:
    """Dict-backed storage for tests and local runs without PostgreSQL."""

    def __init__(self) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        self._rounds: dict[str, RoundLog] = {}
        self._settings = ReportConfig()
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def save_task(self, task: TaskDefinition) -> TaskDefinition:
        with self._lock:
            self._tasks[task.id] = task
        return task

    def get_task(self, task_id: str) -> TaskDefinition | None:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(self) -> list[TaskDefinition]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda task: task.created_at, reverse=True)

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            return self._tasks.pop(task_id, None) is not None

    def save_round(self, log: RoundLog) -> None:
        with self._lock:
            if log.id in self._rounds:
                raise KeyError(f"Round {log.id} already exists")
            self._rounds[log.id] = log

    def get_round(self, round_id: str) -> RoundLog | None:
        with self._lock:
            return self._rounds.get(round_id)

    def list_rounds(self) -> list[RoundLog]:
        with self._lock:
            return sorted(self._rounds.values(), key=lambda log: log.start_time, reverse=True)

    def get_settings(self) -> ReportConfig:
        with self._lock:
            return self._settings.model_copy(deep=True)

    def save_settings(self, config: ReportConfig) -> ReportConfig:
        with self._lock:
            self._settings = config.model_copy(deep=True)
            return self._settings.model_copy(deep=True)


class PostgresRoundStorage:
    """Thread-safe PostgreSQL-backed storage for tasks, round logs and settings."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS round_tasks (
                    task_id TEXT PRIMARY KEY,
                    payload JSONB NOT NULL,
                    created_at BIGINT NOT NULL DEFAULT 0,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS round_logs (
                    round_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    validation_token TEXT NOT NULL UNIQUE,
                    start_time BIGINT NOT NULL,
                    payload JSONB NOT NULL,
                    stored_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_round_logs_start_time
                ON round_logs(start_time DESC)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_round_logs_task_id
                ON round_logs(task_id)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS report_settings (
                    settings_id SMALLINT PRIMARY KEY,
                    payload JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.commit()

    def save_task(self, task: TaskDefinition) -> TaskDefinition:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO round_tasks (task_id, payload, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (task_id) DO UPDATE
                SET payload = EXCLUDED.payload,
                    created_at = EXCLUDED.created_at,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    task.id,
                    self._json_wrapper(task.model_dump(mode="json", by_alias=True)),
                    task.created_at,
                    now,
                ),
            )
            conn.commit()
        return task

    def get_task(self, task_id: str) -> TaskDefinition | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT task_id, payload FROM round_tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return TaskDefinition.model_validate(
            self._parse_json_object(row["payload"], source=f"round_tasks/{row['task_id']}")
        )

    def list_tasks(self) -> list[TaskDefinition]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT task_id, payload FROM round_tasks ORDER BY created_at DESC"
            ).fetchall()
        return [
            TaskDefinition.model_validate(
                self._parse_json_object(row["payload"], source=f"round_tasks/{row['task_id']}")
            )
            for row in rows
        ]

    def delete_task(self, task_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM round_tasks WHERE task_id = %s", (task_id,))
            conn.commit()
        return bool(cursor.rowcount)

    def save_round(self, log: RoundLog) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO round_logs (
                    round_id,
                    task_id,
                    validation_token,
                    start_time,
                    payload,
                    stored_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    log.id,
                    log.task_id,
                    log.validation_token,
                    log.start_time,
                    self._json_wrapper(log.model_dump(mode="json", by_alias=True)),
                    datetime.now(tz=UTC),
                ),
            )
            conn.commit()

    def get_round(self, round_id: str) -> RoundLog | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT round_id, payload FROM round_logs WHERE round_id = %s",
                (round_id,),
            ).fetchone()
        if row is None:
            return None
        return RoundLog.model_validate(
            self._parse_json_object(row["payload"], source=f"round_logs/{row['round_id']}")
        )

    def list_rounds(self) -> list[RoundLog]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT round_id, payload FROM round_logs ORDER BY start_time DESC"
            ).fetchall()
        return [
            RoundLog.model_validate(
                self._parse_json_object(row["payload"], source=f"round_logs/{row['round_id']}")
            )
            for row in rows
        ]

    def get_settings(self) -> ReportConfig:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM report_settings WHERE settings_id = 1"
            ).fetchone()
        if row is None:
            return ReportConfig()
        return ReportConfig.model_validate(
            self._parse_json_object(row["payload"], source="report_settings/1")
        )

    def save_settings(self, config: ReportConfig) -> ReportConfig:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO report_settings (settings_id, payload, updated_at)
                VALUES (1, %s, %s)
                ON CONFLICT (settings_id) DO UPDATE
                SET payload = EXCLUDED.payload,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    self._json_wrapper(config.model_dump(mode="json", by_alias=True)),
                    datetime.now(tz=UTC),
                ),
            )
            conn.commit()
        return config

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_object(raw: Any, *, source: str) -> dict[str, Any]:
        """Parse a JSONB payload into a dict; a corrupt row raises RuntimeError."""
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise RuntimeError(f"Stored payload {source} is not valid JSON") from exc
        else:
            parsed = raw
        if not isinstance(parsed, dict):
            raise RuntimeError(
                f"Stored payload {source} is not a JSON object (got {type(parsed).__name__})"
            )
        return parsed
