"""
Report pipeline run status and per-stage outcomes.
"""

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Optional
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from controller.src.models.run import PipelineRun, StageExecution, STAGE_ORDER

logger = logging.getLogger(__name__)

def outcome_record(run: PipelineRun, execution: StageExecution) -> dict:
    """Structured outcome of one stage for one artifact."""
    return {
        "run_id": run.id,
        "revision": run.trigger.revision,
        "stage": execution.stage.value,
        "artifact": execution.artifact,
        "status": execution.status.value,
        "error_kind": execution.error_kind,
        "exit_code": execution.exit_code,
        "message": execution.message,
        "attempts": execution.attempts,
        "detail": execution.detail,
        "started_at": execution.started_at.isoformat() if execution.started_at else None,
        "finished_at": execution.finished_at.isoformat() if execution.finished_at else None,
    }

class LoggingOutcomeSink:
    """One JSON line per outcome on the `releasex.outcomes` logger."""

    def __init__(self, logger_name: str = "releasex.outcomes"):
        self._log = logging.getLogger(logger_name)

    def run_started(self, run: PipelineRun):
        self._log.info(json.dumps({"run_id": run.id, "event": "run_started", "revision": run.trigger.revision}))

    def record(self, run: PipelineRun, execution: StageExecution):
        self._log.info(json.dumps(outcome_record(run, execution), default=str))

    def run_finished(self, run: PipelineRun):
        self._log.info(json.dumps({
            "run_id": run.id,
            "event": "run_finished",
            "status": run.status.value,
            "error": run.error,
            "artifacts": run.artifact_summary(),
        }))

class DatabaseOutcomeSink:
    """Persists run status and stage outcomes for the API.

    Rows are written on one background thread, in the order the controller
    reports them, so the event loop never waits on the database. `flush`
    blocks until everything reported so far is written.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._session_factory: Optional[sessionmaker] = None
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="releasex-outcomes")

    def _sessions(self) -> sessionmaker:
        # Sync database connection for controller, created on first use
        if self._session_factory is None:
            engine = create_engine(self.database_url)
            self._session_factory = sessionmaker(bind=engine)
        return self._session_factory

    def _submit(self, write, values: dict):
        future = self._writer.submit(write, values)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: Future):
        error = future.exception()
        if error is not None:
            logger.error(f"Failed to persist run outcome: {error}")

    def flush(self, timeout: Optional[float] = None):
        self._writer.submit(lambda: None).result(timeout=timeout)

    def close(self):
        self._writer.shutdown(wait=True)

    def _write_run(self, values: dict):
        from controller.src.models.db import PipelineRun as PipelineRunRow

        run_id = values.pop("id")
        with self._sessions()() as session:
            session.execute(
                update(PipelineRunRow)
                .where(PipelineRunRow.id == run_id)
                .values(**values)
            )
            session.commit()
        logger.info(f"Updated run {run_id} status to {values['status']}")

    def _write_outcome(self, values: dict):
        from controller.src.models.db import StageOutcome

        with self._sessions()() as session:
            session.add(StageOutcome(**values))
            session.commit()
        logger.debug(f"Recorded {values['stage']}/{values['artifact']} for run {values['run_id']}: {values['status']}")

    def _update_run(self, run: PipelineRun, **extra):
        values = {"id": run.id, "status": run.status.value, "updated_at": datetime.utcnow(), **extra}
        self._submit(self._write_run, values)

    def run_started(self, run: PipelineRun):
        self._update_run(run, started_at=run.started_at, target=run.target)

    def record(self, run: PipelineRun, execution: StageExecution):
        # Values are copied now; the execution keeps changing after this call
        self._submit(self._write_outcome, {
            "run_id": run.id,
            "stage": execution.stage.value,
            "stage_order": STAGE_ORDER.index(execution.stage),
            "artifact": execution.artifact,
            "status": execution.status.value,
            "error_kind": execution.error_kind,
            "message": execution.message,
            "attempts": execution.attempts,
            "detail": json.loads(json.dumps(execution.detail, default=str)),
            "started_at": execution.started_at,
            "finished_at": execution.finished_at,
        })

    def run_finished(self, run: PipelineRun):
        self._update_run(run, finished_at=run.finished_at, error=run.error)

def mark_run_failed(database_url: str, run_id: str, error: str):
    """Mark a run failed before a PipelineRun could be built (e.g. unreadable job)."""
    from controller.src.models.db import PipelineRun as PipelineRunRow

    engine = create_engine(database_url)
    with sessionmaker(bind=engine)() as session:
        session.execute(
            update(PipelineRunRow)
            .where(PipelineRunRow.id == run_id)
            .values(status="failed", error=error, finished_at=datetime.utcnow(), updated_at=datetime.utcnow())
        )
        session.commit()
    logger.info(f"Marked run {run_id} failed: {error}")
