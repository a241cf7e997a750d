"""
SQLite storage layer for test runs, transcripts, variants and experiments.

Every write that belongs to a single test is keyed by (run_id, test_id)
and written as an upsert, so re-recording a test replaces its rows
instead of duplicating them.

Database location: ~/.agent_harness/harness.db (configurable via HARNESS_DB_PATH)
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from agent_harness.config import settings
from agent_harness.evaluation.goal_evaluator import GoalTestResult
from agent_harness.schemas.conversation_schema import ConversationTurn, ToolCall
from agent_harness.schemas.experiment_schema import (
    Experiment,
    ExperimentMetrics,
    ExperimentRun,
    ExperimentStatus,
    Variant,
)

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS test_runs (
        run_id TEXT PRIMARY KEY,
        experiment_id TEXT,
        status TEXT NOT NULL DEFAULT 'running',
        total_tests INTEGER NOT NULL DEFAULT 0,
        passed INTEGER NOT NULL DEFAULT 0,
        failed INTEGER NOT NULL DEFAULT 0,
        errors INTEGER NOT NULL DEFAULT 0,
        skipped INTEGER NOT NULL DEFAULT 0,
        started_at TEXT NOT NULL,
        completed_at TEXT
    );

    CREATE TABLE IF NOT EXISTS test_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        test_id TEXT NOT NULL,
        test_name TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        passed INTEGER NOT NULL DEFAULT 0,
        turn_count INTEGER NOT NULL DEFAULT 0,
        duration_ms REAL NOT NULL DEFAULT 0,
        stop_reason TEXT,
        error_message TEXT,
        summary TEXT DEFAULT '',
        result_json TEXT DEFAULT '{}',
        created_at TEXT NOT NULL,
        UNIQUE (run_id, test_id)
    );

    CREATE TABLE IF NOT EXISTS transcripts (
        run_id TEXT NOT NULL,
        test_id TEXT NOT NULL,
        transcript_json TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        PRIMARY KEY (run_id, test_id)
    );

    CREATE TABLE IF NOT EXISTS api_calls (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        test_id TEXT NOT NULL,
        turn_number INTEGER NOT NULL,
        tool_name TEXT NOT NULL,
        input_json TEXT DEFAULT '{}',
        output_json TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS progress_snapshots (
        run_id TEXT NOT NULL,
        test_id TEXT NOT NULL,
        turn_number INTEGER NOT NULL,
        state_json TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (run_id, test_id, turn_number)
    );

    CREATE TABLE IF NOT EXISTS variants (
        variant_id TEXT PRIMARY KEY,
        variant_type TEXT NOT NULL,
        target_file TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT DEFAULT '',
        content TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        baseline_variant_id TEXT,
        source_fix_id TEXT,
        is_baseline INTEGER NOT NULL DEFAULT 0,
        created_by TEXT DEFAULT 'manual',
        created_at TEXT NOT NULL,
        UNIQUE (target_file, content_hash)
    );

    CREATE TABLE IF NOT EXISTS experiments (
        experiment_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        hypothesis TEXT DEFAULT '',
        status TEXT NOT NULL DEFAULT 'draft',
        experiment_type TEXT NOT NULL,
        variants_json TEXT NOT NULL,
        test_ids_json TEXT NOT NULL DEFAULT '[]',
        traffic_split_json TEXT NOT NULL,
        min_sample_size INTEGER NOT NULL,
        max_sample_size INTEGER NOT NULL,
        significance_threshold REAL NOT NULL,
        winning_variant_id TEXT,
        conclusion TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    );

    CREATE TABLE IF NOT EXISTS experiment_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        experiment_id TEXT NOT NULL REFERENCES experiments(experiment_id),
        run_id TEXT NOT NULL,
        test_id TEXT NOT NULL,
        variant_id TEXT NOT NULL REFERENCES variants(variant_id),
        variant_role TEXT NOT NULL,
        passed INTEGER NOT NULL DEFAULT 0,
        metrics_json TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        UNIQUE (experiment_id, run_id, test_id)
    );

    CREATE INDEX IF NOT EXISTS idx_results_run ON test_results(run_id);
    CREATE INDEX IF NOT EXISTS idx_api_calls_test ON api_calls(run_id, test_id);
    CREATE INDEX IF NOT EXISTS idx_exp_runs_variant ON experiment_runs(experiment_id, variant_id);
"""


class HarnessDatabase:
    """Thin repository over a single SQLite file."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None) -> None:
        self._db_path = Path(db_path or settings.storage.db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """SQLite connection with WAL mode for concurrent reads."""
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        with self.get_connection() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Database initialized at %s", self._db_path)

    # --- Test runs ---

    def create_test_run(
        self, run_id: str, total_tests: int, experiment_id: Optional[str] = None
    ) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO test_runs (run_id, experiment_id, status, total_tests, started_at)
                VALUES (?, ?, 'running', ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    total_tests = excluded.total_tests,
                    experiment_id = excluded.experiment_id
                """,
                (run_id, experiment_id, total_tests, _now_iso()),
            )

    def complete_test_run(
        self,
        run_id: str,
        passed: int,
        failed: int,
        errors: int,
        skipped: int,
        status: str = "completed",
    ) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                UPDATE test_runs
                SET status = ?, passed = ?, failed = ?, errors = ?, skipped = ?,
                    completed_at = ?
                WHERE run_id = ?
                """,
                (status, passed, failed, errors, skipped, _now_iso(), run_id),
            )

    def get_test_run(self, run_id: str) -> Optional[dict[str, Any]]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM test_runs WHERE run_id = ?", (run_id,)).fetchone()
        return dict(row) if row else None

    def get_recent_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent finished runs, newest first, with their pass rate."""
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM test_runs
                WHERE completed_at IS NOT NULL
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        runs = []
        for row in rows:
            run = dict(row)
            executed = run["passed"] + run["failed"] + run["errors"]
            run["pass_rate"] = run["passed"] / executed if executed else 0.0
            runs.append(run)
        return runs

    # --- Test results ---

    def save_test_result(self, result: GoalTestResult) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO test_results (
                    run_id, test_id, test_name, status, passed, turn_count, duration_ms,
                    stop_reason, error_message, summary, result_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, test_id) DO UPDATE SET
                    test_name = excluded.test_name,
                    status = excluded.status,
                    passed = excluded.passed,
                    turn_count = excluded.turn_count,
                    duration_ms = excluded.duration_ms,
                    stop_reason = excluded.stop_reason,
                    error_message = excluded.error_message,
                    summary = excluded.summary,
                    result_json = excluded.result_json
                """,
                (
                    result.run_id,
                    result.test_id,
                    result.test_name,
                    result.status.value,
                    int(result.passed),
                    result.turn_count,
                    result.duration_ms,
                    result.stop_reason.value if result.stop_reason else None,
                    result.error,
                    result.summary,
                    json.dumps(result.to_dict(), default=str),
                    _now_iso(),
                ),
            )

    def get_test_results(self, run_id: str) -> list[dict[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM test_results WHERE run_id = ? ORDER BY id", (run_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    def get_test_result(self, run_id: str, test_id: str) -> Optional[dict[str, Any]]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM test_results WHERE run_id = ? AND test_id = ?",
                (run_id, test_id),
            ).fetchone()
        return dict(row) if row else None

    def get_results_for_test(self, test_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM test_results WHERE test_id = ? ORDER BY id DESC LIMIT ?",
                (test_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    # --- Transcripts, tool calls, snapshots ---

    def save_transcript(self, run_id: str, test_id: str, turns: list[ConversationTurn]) -> None:
        payload = json.dumps([t.model_dump(mode="json") for t in turns])
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO transcripts (run_id, test_id, transcript_json, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(run_id, test_id) DO UPDATE SET
                    transcript_json = excluded.transcript_json
                """,
                (run_id, test_id, payload, _now_iso()),
            )

    def get_transcript(self, run_id: str, test_id: str) -> list[ConversationTurn]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT transcript_json FROM transcripts WHERE run_id = ? AND test_id = ?",
                (run_id, test_id),
            ).fetchone()
        if row is None:
            return []
        return [ConversationTurn.model_validate(t) for t in json.loads(row["transcript_json"])]

    def save_api_calls(
        self, run_id: str, test_id: str, calls: list[tuple[int, ToolCall]]
    ) -> None:
        """Replace the tool-call log of one test with ``(turn_number, call)`` pairs."""
        now = _now_iso()
        with self.get_connection() as conn:
            conn.execute(
                "DELETE FROM api_calls WHERE run_id = ? AND test_id = ?", (run_id, test_id)
            )
            conn.executemany(
                """
                INSERT INTO api_calls (
                    run_id, test_id, turn_number, tool_name, input_json, output_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        run_id, test_id, turn, call.tool,
                        json.dumps(call.tool_input, default=str),
                        json.dumps(call.tool_output, default=str),
                        now,
                    )
                    for turn, call in calls
                ],
            )

    def get_api_calls(self, run_id: str, test_id: str) -> list[dict[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM api_calls WHERE run_id = ? AND test_id = ? ORDER BY id",
                (run_id, test_id),
            ).fetchall()
        return [dict(r) for r in rows]

    def save_progress_snapshot(
        self, run_id: str, test_id: str, turn_number: int, state: dict[str, Any]
    ) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO progress_snapshots (run_id, test_id, turn_number, state_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(run_id, test_id, turn_number) DO UPDATE SET
                    state_json = excluded.state_json
                """,
                (run_id, test_id, turn_number, json.dumps(state, default=str), _now_iso()),
            )

    def get_progress_snapshots(self, run_id: str, test_id: str) -> list[dict[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT turn_number, state_json FROM progress_snapshots
                WHERE run_id = ? AND test_id = ? ORDER BY turn_number
                """,
                (run_id, test_id),
            ).fetchall()
        return [
            {"turn_number": r["turn_number"], **json.loads(r["state_json"])} for r in rows
        ]

    # --- Variants ---

    @staticmethod
    def _row_to_variant(row: sqlite3.Row) -> Variant:
        data = dict(row)
        data["is_baseline"] = bool(data["is_baseline"])
        return Variant.model_validate(data)

    def insert_variant(self, variant: Variant) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO variants (
                    variant_id, variant_type, target_file, name, description, content,
                    content_hash, baseline_variant_id, source_fix_id, is_baseline,
                    created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    variant.variant_id,
                    variant.variant_type.value,
                    variant.target_file,
                    variant.name,
                    variant.description,
                    variant.content,
                    variant.content_hash,
                    variant.baseline_variant_id,
                    variant.source_fix_id,
                    int(variant.is_baseline),
                    variant.created_by,
                    _iso(variant.created_at),
                ),
            )

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM variants WHERE variant_id = ?", (variant_id,)
            ).fetchone()
        return self._row_to_variant(row) if row else None

    def get_variant_by_hash(self, target_file: str, content_hash: str) -> Optional[Variant]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM variants WHERE target_file = ? AND content_hash = ?",
                (target_file, content_hash),
            ).fetchone()
        return self._row_to_variant(row) if row else None

    def list_variants(self, target_file: Optional[str] = None) -> list[Variant]:
        query = "SELECT * FROM variants"
        params: tuple = ()
        if target_file is not None:
            query += " WHERE target_file = ?"
            params = (target_file,)
        with self.get_connection() as conn:
            rows = conn.execute(query + " ORDER BY created_at, rowid", params).fetchall()
        return [self._row_to_variant(r) for r in rows]

    def get_baseline_variant(self, target_file: str) -> Optional[Variant]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM variants WHERE target_file = ? AND is_baseline = 1",
                (target_file,),
            ).fetchone()
        return self._row_to_variant(row) if row else None

    def set_baseline_variant(self, variant_id: str) -> bool:
        """Make one variant the baseline of its file; clears any previous baseline."""
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT target_file FROM variants WHERE variant_id = ?", (variant_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE variants SET is_baseline = 0 WHERE target_file = ?", (row["target_file"],)
            )
            conn.execute("UPDATE variants SET is_baseline = 1 WHERE variant_id = ?", (variant_id,))
        return True

    # --- Experiments ---

    @staticmethod
    def _row_to_experiment(row: sqlite3.Row) -> Experiment:
        data = dict(row)
        data["variants"] = json.loads(data.pop("variants_json"))
        data["test_ids"] = json.loads(data.pop("test_ids_json"))
        data["traffic_split"] = json.loads(data.pop("traffic_split_json"))
        return Experiment.model_validate(data)

    def save_experiment(self, experiment: Experiment) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO experiments (
                    experiment_id, name, hypothesis, status, experiment_type, variants_json,
                    test_ids_json, traffic_split_json, min_sample_size, max_sample_size,
                    significance_threshold, winning_variant_id, conclusion, created_at,
                    started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(experiment_id) DO UPDATE SET
                    name = excluded.name,
                    hypothesis = excluded.hypothesis,
                    status = excluded.status,
                    test_ids_json = excluded.test_ids_json,
                    traffic_split_json = excluded.traffic_split_json,
                    winning_variant_id = excluded.winning_variant_id,
                    conclusion = excluded.conclusion,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at
                """,
                (
                    experiment.experiment_id,
                    experiment.name,
                    experiment.hypothesis,
                    experiment.status.value,
                    experiment.experiment_type.value,
                    json.dumps([v.model_dump(mode="json") for v in experiment.variants]),
                    json.dumps(experiment.test_ids),
                    json.dumps(experiment.traffic_split),
                    experiment.min_sample_size,
                    experiment.max_sample_size,
                    experiment.significance_threshold,
                    experiment.winning_variant_id,
                    experiment.conclusion,
                    _iso(experiment.created_at),
                    _iso(experiment.started_at),
                    _iso(experiment.completed_at),
                ),
            )

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM experiments WHERE experiment_id = ?", (experiment_id,)
            ).fetchone()
        return self._row_to_experiment(row) if row else None

    def list_experiments(
        self, status: Optional[ExperimentStatus] = None, limit: int = 50
    ) -> list[Experiment]:
        query = "SELECT * FROM experiments"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_experiment(r) for r in rows]

    # --- Experiment runs ---

    def record_experiment_run(self, run: ExperimentRun) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO experiment_runs (
                    experiment_id, run_id, test_id, variant_id, variant_role, passed,
                    metrics_json, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(experiment_id, run_id, test_id) DO UPDATE SET
                    variant_id = excluded.variant_id,
                    variant_role = excluded.variant_role,
                    passed = excluded.passed,
                    metrics_json = excluded.metrics_json,
                    completed_at = excluded.completed_at
                """,
                (
                    run.experiment_id,
                    run.run_id,
                    run.test_id,
                    run.variant_id,
                    run.variant_role.value,
                    int(run.metrics.passed),
                    run.metrics.model_dump_json(),
                    _iso(run.started_at),
                    _iso(run.completed_at),
                ),
            )

    def get_experiment_runs(
        self, experiment_id: str, variant_id: Optional[str] = None
    ) -> list[ExperimentRun]:
        query = "SELECT * FROM experiment_runs WHERE experiment_id = ?"
        params: list[Any] = [experiment_id]
        if variant_id is not None:
            query += " AND variant_id = ?"
            params.append(variant_id)
        with self.get_connection() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [
            ExperimentRun(
                experiment_id=r["experiment_id"],
                run_id=r["run_id"],
                test_id=r["test_id"],
                variant_id=r["variant_id"],
                variant_role=r["variant_role"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                metrics=ExperimentMetrics.model_validate_json(r["metrics_json"]),
            )
            for r in rows
        ]

    def count_experiment_runs(self, experiment_id: str) -> dict[str, int]:
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT variant_id, COUNT(*) AS n FROM experiment_runs
                WHERE experiment_id = ? GROUP BY variant_id
                """,
                (experiment_id,),
            ).fetchall()
        return {r["variant_id"]: r["n"] for r in rows}
