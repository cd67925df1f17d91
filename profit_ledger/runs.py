import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from . import tables
from .clock import Clock, utcnow
from .database import managed_session
from .errors import AlreadyRunError, NotFoundError
from .models import ProfitRun, RunStatus, RunType

logger = logging.getLogger(__name__)


class RunLedger:
    """Audit trail of profit distribution batches.

    A run row is written before any profit is credited and finalized after the
    batch, so a crash mid-run leaves a "running" row behind as evidence.
    """

    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or utcnow

    def open(self, run_date: date, run_type: RunType = RunType.DAILY) -> int:
        with managed_session(self.session_factory) as session:
            existing = self._completed_run_id(session, run_date, run_type)
            if existing is not None:
                logger.warning("%s profit run for %s already completed (run %s)", run_type.value, run_date, existing)
                raise AlreadyRunError(f"{run_type.value.capitalize()} profit run already completed for {run_date}")

            now = self.clock()
            run = tables.ProfitRun(
                run_type=run_type,
                run_date=run_date,
                idempotency_key=f"{run_type.value}_{run_date.isoformat()}_{int(now.timestamp() * 1000)}_{uuid4().hex[:8]}",
                status=RunStatus.RUNNING,
                started_at=now,
                error_details=[],
            )
            session.add(run)
            session.flush()

            logger.info("Profit run %s started for %s (%s)", run.id, run_date, run.idempotency_key)
            return run.id

    def finalize(
        self,
        run_id: int,
        total_investments: int,
        users_credited: int,
        total_profit: Decimal,
        errors: list[str],
    ) -> ProfitRun:
        with managed_session(self.session_factory) as session:
            run = session.scalars(
                select(tables.ProfitRun).where(tables.ProfitRun.id == run_id).with_for_update()
            ).one_or_none()
            if run is None:
                raise NotFoundError(f"Profit run {run_id} not found")

            errors = list(errors)
            if not errors:
                # A concurrent duplicate fire may have completed first
                winner = self._completed_run_id(session, run.run_date, run.run_type)
                if winner is not None and winner != run.id:
                    errors.append(f"Run {winner} already completed for {run.run_date}")

            run.status = RunStatus.PARTIAL if errors else RunStatus.COMPLETED
            run.completed_at = self.clock()
            run.total_investments_processed = total_investments
            run.total_users_credited = users_credited
            run.total_profit_distributed = total_profit
            run.errors_count = len(errors)
            run.error_details = errors

            logger.info(
                "Profit run %s finished %s: %s investments, %s users, %s distributed, %s errors",
                run.id, run.status.value, total_investments, users_credited, total_profit, len(errors),
            )
            return ProfitRun.model_validate(run)

    def history(self, limit: int = 30) -> list[ProfitRun]:
        with managed_session(self.session_factory) as session:
            runs = session.scalars(
                select(tables.ProfitRun)
                .order_by(tables.ProfitRun.started_at.desc(), tables.ProfitRun.id.desc())
                .limit(limit)
            )
            return [ProfitRun.model_validate(run) for run in runs]

    def reconcile_stale(self, older_than: timedelta) -> list[ProfitRun]:
        """Mark runs stuck in "running" past the cutoff as partial.

        A stale run is never promoted to completed, so the next scheduler tick
        may run the day again; investments already credited are skipped by
        their advanced next_profit_date.
        """
        cutoff = self.clock() - older_than
        with managed_session(self.session_factory) as session:
            stale = list(session.scalars(
                select(tables.ProfitRun)
                .where(
                    tables.ProfitRun.status == RunStatus.RUNNING,
                    tables.ProfitRun.started_at < cutoff,
                )
                .order_by(tables.ProfitRun.id)
                .with_for_update()
            ))
            now = self.clock()
            for run in stale:
                run.status = RunStatus.PARTIAL
                run.completed_at = now
                run.error_details = list(run.error_details or []) + [
                    f"Run interrupted: still running at {now.isoformat()}, marked partial"
                ]
                run.errors_count = len(run.error_details)
                logger.warning("Profit run %s for %s was stale, marked partial", run.id, run.run_date)

            return [ProfitRun.model_validate(run) for run in stale]

    def _completed_run_id(self, session: Session, run_date: date, run_type: RunType) -> Optional[int]:
        return session.scalar(
            select(tables.ProfitRun.id).where(
                tables.ProfitRun.run_type == run_type,
                tables.ProfitRun.run_date == run_date,
                tables.ProfitRun.status == RunStatus.COMPLETED,
            )
        )
