# medcycle/services/transactions.py
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from medcycle.models.medication_event import CASCADE_DELETE_FLAG
from medcycle.schemas.schema_workflow import DeletionSummary
from medcycle.services.errors import (
    MedicationError,
    NotFoundError,
    TransactionAbortError,
    VersionConflict,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionManager:
    """
    The only way writes reach the database.

        with tx.transaction() as db:
            ...            # commit on clean exit, rollback on any exception

    A fresh Session per transaction; nothing is shared between callers.
    """

    def __init__(
        self,
        session_factory,
        command_store,
        event_log,
        max_writes_per_transaction: int = 500,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
    ):
        self.session_factory = session_factory
        self.command_store = command_store
        self.event_log = event_log
        self.max_writes_per_transaction = max_writes_per_transaction
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    @contextmanager
    def transaction(self, cascade: bool = False) -> Iterator[Session]:
        db = self.session_factory()
        if cascade:
            db.info[CASCADE_DELETE_FLAG] = True
        try:
            yield db
            db.commit()
        except MedicationError:
            db.rollback()
            raise
        except StaleDataError as e:
            db.rollback()
            raise VersionConflict("medication was changed by another request; re-read and retry") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("[tx] aborted: %s", e)
            raise TransactionAbortError("transaction aborted; nothing was saved, safe to retry") from e
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    def run(self, work: Callable[[Session], T], retry: bool = False, cascade: bool = False) -> T:
        """
        work(db) inside one transaction. With retry=True a VersionConflict or
        TransactionAbortError re-runs the whole unit (fresh session, fresh
        reads) up to retry_attempts times with exponential backoff.
        """
        attempts = self.retry_attempts if retry else 1
        attempt = 1
        while True:
            try:
                with self.transaction(cascade=cascade) as db:
                    return work(db)
            except (VersionConflict, TransactionAbortError) as e:
                if attempt >= attempts:
                    raise
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.info("[tx] retry %s/%s in %.2fs after %s", attempt, attempts, delay, e.code)
                time.sleep(delay)
                attempt += 1

    # ---------- cascade delete ----------

    def cascade_delete(self, command_id: str, hard_delete: bool = False) -> DeletionSummary:
        """
        1) tombstone the command (discontinued + deleted_at) in its own tx
        2) delete its events + scan marks in chunks, one tx per chunk
        3) verify zero events remain
        4) hard path: remove the command row

        Every step is idempotent, so re-running after a partial failure
        finishes the job. A command that is already gone still gets its
        orphaned events swept.
        """
        existed = self.run(
            lambda db: self._tombstone(db, command_id),
            retry=True,
        )

        events_deleted = self._delete_events(command_id)

        remaining = self.run(lambda db: self.event_log.count_events(db, command_id))
        if remaining:
            # something appended between chunks; one more sweep
            events_deleted += self._delete_events(command_id)
            remaining = self.run(lambda db: self.event_log.count_events(db, command_id))
        if remaining:
            raise TransactionAbortError(
                f"{remaining} events still reference command {command_id}; retry the delete"
            )

        if not existed and not events_deleted:
            raise NotFoundError(f"medication command {command_id} not found")

        row_removed = False
        if hard_delete and existed:
            row_removed = self.run(lambda db: self._remove_row(db, command_id), retry=True)

        summary = DeletionSummary(
            command_deleted=True,
            events_deleted=events_deleted,
            total_items_deleted=events_deleted + (1 if row_removed else 0),
        )
        logger.info(
            "[cascade_delete] command=%s hard=%s events=%s total=%s",
            command_id, hard_delete, summary.events_deleted, summary.total_items_deleted,
        )
        return summary

    def _tombstone(self, db: Session, command_id: str) -> bool:
        if self.command_store.get_command(db, command_id) is None:
            return False
        self.command_store.delete_command(db, command_id, hard_delete=False)
        return True

    def _delete_events(self, command_id: str) -> int:
        total = 0
        while True:
            deleted = self.run(
                lambda db: self.event_log.delete_events_for_command_chunk(
                    db, command_id, self.max_writes_per_transaction
                ),
                retry=True,
                cascade=True,
            )
            total += deleted
            if deleted:
                logger.info("[cascade_delete] command=%s chunk=%s total=%s", command_id, deleted, total)
            if deleted < self.max_writes_per_transaction:
                return total

    def _remove_row(self, db: Session, command_id: str) -> bool:
        if self.event_log.count_events(db, command_id):
            raise TransactionAbortError(f"events reappeared for command {command_id}")
        return self.command_store.delete_command(db, command_id, hard_delete=True)
