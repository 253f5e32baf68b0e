import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from errors import PersistenceTransientFailure
from models import AccessLog
from schemas import AccessLogEntry

logger = logging.getLogger("gateway.access_log")

# ======================================================
# Tunables
# ======================================================

DEFAULT_FLUSH_INTERVAL = 60.0       # seconds
DEFAULT_MAX_BUFFER_SIZE = 5_000     # entries pending before an early flush


# ======================================================
# Durable store
# ======================================================

@dataclass(frozen=True)
class InsertManyResult:
    inserted: int
    # Positions, within the submitted batch, of the entries that were not written
    failed_indices: Tuple[int, ...] = ()

    @property
    def failed(self) -> int:
        return len(self.failed_indices)


class AccessLogStore:
    """
    Unordered multi-insert into access_logs.

    A batch insert is tried first. If the batch is refused, every entry is
    retried on its own so one bad row cannot hold back the others.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def insert_many(self, entries: Sequence[AccessLogEntry]) -> InsertManyResult:
        rows = [entry.model_dump() for entry in entries]
        return await asyncio.to_thread(self._insert_many, rows)

    def _insert_many(self, rows: List[dict]) -> InsertManyResult:
        if not rows:
            return InsertManyResult(inserted=0)

        with self._session_factory() as session:
            try:
                session.execute(insert(AccessLog), rows)
                session.commit()
                return InsertManyResult(inserted=len(rows))
            except SQLAlchemyError as e:
                session.rollback()
                logger.warning(f"Batch insert of {len(rows)} access logs failed, retrying per entry: {type(e).__name__}")

            failed = []
            for index, row in enumerate(rows):
                try:
                    session.execute(insert(AccessLog), [row])
                    session.commit()
                except SQLAlchemyError:
                    session.rollback()
                    failed.append(index)

        if len(failed) == len(rows):
            raise PersistenceTransientFailure(f"none of {len(rows)} access logs were written")

        return InsertManyResult(inserted=len(rows) - len(failed), failed_indices=tuple(failed))


# ======================================================
# Buffer
# ======================================================

class AccessLogBuffer:
    """
    In-memory queue of access log entries, flushed on a timer or when full.

    Design guarantees:
    - enqueue() never blocks and never drops: the buffer grows without bound
      while the store is down
    - at most one flush is in flight at a time
    - a flush only removes the entries it snapshotted; entries enqueued while
      it runs stay for the next one
    - a flush that writes nothing leaves the buffer untouched, and entries the
      store reports as failed go back to the front of the buffer (at-least-once)
    """

    def __init__(
        self,
        store: AccessLogStore,
        *,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
    ):
        self._store = store
        self._flush_interval = flush_interval
        self._max_buffer_size = max_buffer_size

        self._pending: List[AccessLogEntry] = []
        self._flush_in_flight = False
        self._flush_requested = False

        self._timer_task: Optional[asyncio.Task] = None
        self._flush_tasks: Set[asyncio.Task] = set()

    # ======================================================
    # Lifecycle
    # ======================================================

    def start(self) -> None:
        """
        Register the periodic flush. Must be called with a running event loop.
        """
        if self._timer_task is not None:
            return

        self._timer_task = asyncio.get_running_loop().create_task(self._timer_loop())
        logger.info(
            f"Access log buffer started (interval={self._flush_interval}s, "
            f"max_size={self._max_buffer_size})"
        )

    async def stop(self) -> None:
        """
        Cancel the timer, let scheduled flushes finish, then flush what is left.
        """
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)

        await self.flush()

        if self._pending:
            logger.error(f"Access log buffer stopped with {len(self._pending)} unflushed entries")
        else:
            logger.info("Access log buffer stopped")

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

    # ======================================================
    # Public API
    # ======================================================

    @property
    def pending(self) -> List[AccessLogEntry]:
        return list(self._pending)

    @property
    def flush_in_flight(self) -> bool:
        return self._flush_in_flight

    def enqueue(self, entry: AccessLogEntry) -> None:
        """
        Append an entry. Zero await; schedules an early flush when the buffer is full.
        """
        self._pending.append(entry)

        if (
            len(self._pending) >= self._max_buffer_size
            and not self._flush_in_flight
            and not self._flush_requested
        ):
            self._flush_requested = True
            task = asyncio.get_running_loop().create_task(self.flush())
            self._flush_tasks.add(task)
            task.add_done_callback(self._flush_tasks.discard)

    async def flush(self) -> None:
        if self._flush_in_flight:
            return

        if not self._pending:
            self._flush_requested = False
            return

        self._flush_in_flight = True
        snapshot = tuple(self._pending)

        try:
            result = await self._store.insert_many(snapshot)
        except Exception as e:
            # Store failure must NOT lose entries; they are retried next flush
            logger.error(
                f"Flushing {len(snapshot)} access logs failed (kept for retry): "
                f"{type(e).__name__}: {e}"
            )
        else:
            # Entries only ever leave from the front, so the snapshot is the prefix
            del self._pending[:len(snapshot)]
            if result.failed:
                self._pending[0:0] = [snapshot[i] for i in result.failed_indices]
                logger.warning(
                    f"Flushed access logs with {result.failed} of {len(snapshot)} entries "
                    f"rejected (kept for retry)"
                )
            else:
                logger.debug(f"Flushed {result.inserted} access logs")
        finally:
            self._flush_in_flight = False
            self._flush_requested = False
