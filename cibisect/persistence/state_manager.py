#!/usr/bin/env python3
"""State Manager - Bisection history ledger using SQLAlchemy ORM.

Keeps a queryable record of every search and every verdict for status and
report commands. The decision log held by the session store remains the
source of truth for resuming a search.
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import scoped_session, sessionmaker

from cibisect.persistence.models import Base, Search, Step


logger = logging.getLogger(__name__)

# Constants
DEFAULT_DB_PATH = "bisect.db"


class DatabaseError(Exception):
    """Base exception for database-related errors."""


@dataclass
class SearchRecord:
    """Bisection search data.

    Attributes:
        search_id: Database row identifier
        identifier: Search identifier shared by all builds of the search
        good_commit: Initial known good commit
        bad_commit: Initial known bad commit
        mode: Drive mode that created the search (loop or chained)
        start_time: Search start timestamp
        end_time: Search end timestamp (None while running)
        status: running, completed or failed
        result_commit: First bad commit (None until complete)
        error_message: Last fatal error, if any
    """

    search_id: int
    identifier: str
    good_commit: Optional[str]
    bad_commit: Optional[str]
    mode: str
    start_time: str
    end_time: Optional[str] = None
    status: str = "running"
    result_commit: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StepRecord:
    """Recorded verdict of one candidate commit."""

    step_id: int
    step_num: int
    commit_sha: str
    verdict: Optional[str]
    successes: int
    failures: int
    timestamp: str
    error_message: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_record(row: Search) -> SearchRecord:
    return SearchRecord(
        search_id=row.search_id,
        identifier=row.identifier,
        good_commit=row.good_commit,
        bad_commit=row.bad_commit,
        mode=row.mode,
        start_time=row.start_time,
        end_time=row.end_time,
        status=row.status,
        result_commit=row.result_commit,
        error_message=row.error_message,
    )


class StateManager:
    """Manage the bisection history ledger using SQLAlchemy ORM.

    Attributes:
        db_path: Path to SQLite database file
        engine: SQLAlchemy engine
        Session: Scoped session factory
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH) -> None:
        """Initialize state manager with SQLAlchemy.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

        db_parent = Path(db_path).parent
        if db_parent != Path():
            db_parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )
        self.Session = scoped_session(sessionmaker(bind=self.engine))

        try:
            Base.metadata.create_all(self.engine)
            logger.debug(f"Database initialized at {self.db_path}")
        except Exception as exc:
            msg = f"Failed to initialize database: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc

    def _find(self, session: Any, identifier: str) -> Optional[Search]:
        stmt = select(Search).where(Search.identifier == identifier)
        return session.execute(stmt).scalar_one_or_none()

    def get_or_create_search(
        self,
        identifier: str,
        good_commit: Optional[str] = None,
        bad_commit: Optional[str] = None,
        mode: str = "loop",
    ) -> int:
        """Get the search for an identifier or create it.

        A search that previously failed is switched back to running.

        Args:
            identifier: Search identifier
            good_commit: Initial known good commit
            bad_commit: Initial known bad commit
            mode: Drive mode (loop or chained)

        Returns:
            Search row ID

        Raises:
            DatabaseError: If the operation fails
        """
        session = self.Session()
        try:
            existing = self._find(session, identifier)
            if existing:
                if existing.status == "failed":
                    logger.info(f"Resuming failed search '{identifier}'")
                    existing.status = "running"
                    existing.end_time = None
                    existing.error_message = None
                    session.commit()
                return existing.search_id

            new_search = Search(
                identifier=identifier,
                good_commit=good_commit,
                bad_commit=bad_commit,
                mode=mode,
                start_time=_now(),
                status="running",
            )
            session.add(new_search)
            session.commit()

            logger.info(f"Created bisection search '{identifier}'")
            return new_search.search_id

        except Exception as exc:
            session.rollback()
            msg = f"Failed to get or create search: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def get_search(self, identifier: str) -> Optional[SearchRecord]:
        """Get search by identifier, None if unknown."""
        session = self.Session()
        try:
            row = self._find(session, identifier)
            return _to_record(row) if row else None
        finally:
            session.close()

    def get_latest_search(self) -> Optional[SearchRecord]:
        """Get most recently created search."""
        session = self.Session()
        try:
            stmt = select(Search).order_by(Search.search_id.desc()).limit(1)
            row = session.execute(stmt).scalar_one_or_none()
            return _to_record(row) if row else None
        finally:
            session.close()

    def update_search(self, identifier: str, **kwargs: Any) -> None:
        """Update search fields.

        Args:
            identifier: Search identifier
            **kwargs: Fields to update (end_time, status, result_commit, error_message)

        Raises:
            DatabaseError: If update fails
        """
        session = self.Session()
        try:
            row = self._find(session, identifier)
            if not row:
                logger.warning(f"Search '{identifier}' not found for update")
                return

            valid_fields = {"end_time", "status", "result_commit", "error_message"}
            for field, value in kwargs.items():
                if field in valid_fields:
                    setattr(row, field, value)

            session.commit()

        except Exception as exc:
            session.rollback()
            msg = f"Failed to update search: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def complete_search(self, identifier: str, result_commit: str) -> None:
        """Mark a search as completed with its culprit."""
        self.update_search(
            identifier, status="completed", result_commit=result_commit, end_time=_now()
        )

    def fail_search(self, identifier: str, error_message: str) -> None:
        """Mark a search as failed."""
        self.update_search(
            identifier, status="failed", error_message=error_message, end_time=_now()
        )

    def add_step(
        self,
        identifier: str,
        commit_sha: str,
        verdict: Optional[str],
        successes: int = 0,
        failures: int = 0,
        error_message: Optional[str] = None,
    ) -> int:
        """Record a verdict for a candidate commit.

        Args:
            identifier: Search identifier
            commit_sha: Tested commit
            verdict: good, bad, or None when the test crashed
            successes: Number of passing runs
            failures: Number of failing runs
            error_message: Crash description, if any

        Returns:
            Step row ID

        Raises:
            DatabaseError: If the search is unknown or the insert fails
        """
        session = self.Session()
        try:
            row = self._find(session, identifier)
            if not row:
                raise DatabaseError(f"Search '{identifier}' not found")

            count_stmt = select(func.count(Step.step_id)).where(Step.search_id == row.search_id)
            step_num = session.execute(count_stmt).scalar_one() + 1

            step = Step(
                search_id=row.search_id,
                step_num=step_num,
                commit_sha=commit_sha,
                verdict=verdict,
                successes=successes,
                failures=failures,
                timestamp=_now(),
                error_message=error_message,
            )
            session.add(step)
            session.commit()
            return step.step_id

        except DatabaseError:
            session.rollback()
            raise
        except Exception as exc:
            session.rollback()
            msg = f"Failed to add step: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def get_steps(self, identifier: str) -> List[StepRecord]:
        """Get all recorded steps of a search, oldest first."""
        session = self.Session()
        try:
            stmt = (
                select(Step)
                .join(Search)
                .where(Search.identifier == identifier)
                .order_by(Step.step_num)
            )
            return [
                StepRecord(
                    step_id=row.step_id,
                    step_num=row.step_num,
                    commit_sha=row.commit_sha,
                    verdict=row.verdict,
                    successes=row.successes,
                    failures=row.failures,
                    timestamp=row.timestamp,
                    error_message=row.error_message,
                )
                for row in session.execute(stmt).scalars().all()
            ]
        finally:
            session.close()

    def generate_summary(self, identifier: str) -> Dict[str, Any]:
        """Generate summary of a bisection search.

        Args:
            identifier: Search identifier

        Returns:
            Summary dictionary (empty if the search is unknown)
        """
        search = self.get_search(identifier)
        if not search:
            return {}

        steps = self.get_steps(identifier)

        results = {"good": 0, "bad": 0, "crashed": 0}
        for step in steps:
            key = step.verdict or "crashed"
            results[key] = results.get(key, 0) + 1

        summary = asdict(search)
        summary.update(
            {
                "total_steps": len(steps),
                "total_runs": sum(s.successes + s.failures for s in steps),
                "results": results,
                "steps": [asdict(s) for s in steps],
            }
        )
        return summary

    def export_report(self, identifier: str, format: str = "json") -> str:
        """Export bisection report.

        Args:
            identifier: Search identifier
            format: Output format (json or text)

        Returns:
            Report string
        """
        summary = self.generate_summary(identifier)

        if format == "json":
            return json.dumps(summary, indent=2)

        if format == "text":
            if not summary:
                return f"No bisection search found for '{identifier}'"

            report = []
            report.append("=" * 70)
            report.append("BISECTION REPORT")
            report.append("=" * 70)
            report.append(f"\nSearch: {summary['identifier']} ({summary['mode']} mode)")
            report.append(f"Good commit: {summary['good_commit']}")
            report.append(f"Bad commit:  {summary['bad_commit']}")
            report.append(f"Status: {summary['status']}")
            if summary["error_message"]:
                report.append(f"Error: {summary['error_message']}")

            report.append(f"\nTotal steps: {summary['total_steps']}")
            report.append(f"Total test runs: {summary['total_runs']}")

            report.append("\nResults breakdown:")
            for result, count in summary["results"].items():
                report.append(f"  {result}: {count}")

            report.append("\n" + "-" * 70)
            report.append("Step Details:")
            report.append("-" * 70)

            for step in summary["steps"]:
                report.append(
                    f"{step['step_num']:3d}. {step['commit_sha'][:12]} | "
                    f"{step['verdict'] or 'crashed':7s} | "
                    f"{step['successes']} passed, {step['failures']} failed"
                )
                if step["error_message"]:
                    report.append(f"     Error: {step['error_message']}")

            if summary["result_commit"]:
                report.append("\n" + "=" * 70)
                report.append(f"# first bad commit: [{summary['result_commit']}]")

            report.append("\n" + "=" * 70)
            return "\n".join(report)

        return ""

    def close(self) -> None:
        """Close database connection and cleanup."""
        try:
            self.Session.remove()
            self.engine.dispose()
            logger.debug("Database connections closed")
        except Exception as exc:
            logger.error(f"Error closing database: {exc}")
