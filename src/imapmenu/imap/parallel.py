# =============================================================================
# Parallel Fetch
# =============================================================================
# Fetches a large UID set over several connections, streaming batches as they
# arrive so the menu can render the newest mail right away.
#
#   UIDs (newest first, capped) -> N chunks
#     lane 1: chunk 1, batch by batch, on its own connection
#     then:   remaining chunks, at most `max_extra_lanes` at once, each on a
#             pooled or throwaway connection
#   every lane -> one asyncio.Queue -> on_batch() / stream()
#
# Cancellation is cooperative: a CancelToken is checked before each lane
# starts and before each batch. A batch already in flight completes and is
# delivered. Batch order across lanes is not guaranteed.
#
# Errors in a lane are logged and collected in the FetchOutcome; they never
# cancel the other lanes.
# =============================================================================

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from imapmenu.core import Message
from imapmenu.imap.errors import FetchFailed, IMAPError
from imapmenu.transport import TransportError

if TYPE_CHECKING:
    from imapmenu.core import Account
    from imapmenu.imap.pool import ConnectionPool

logger = logging.getLogger(__name__)

BatchCallback = Callable[[list[Message]], Awaitable[None] | None]


class CancelToken:
    """
    Cooperative cancellation signal.

    Cancelled either explicitly with cancel() or when the optional predicate
    returns True (e.g. "99 unread messages already shown").

    Usage:
        >>> token = CancelToken(lambda: cache.unread_count(key) >= 99)
        >>> if token.is_cancelled:
        ...     return
    """

    def __init__(self, predicate: Callable[[], bool] | None = None) -> None:
        self._event = asyncio.Event()
        self._predicate = predicate

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if not self._event.is_set() and self._predicate is not None and self._predicate():
            self._event.set()
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class FetchOutcome:
    """
    Result of a parallel fetch.

    Attributes:
        fetched: Messages delivered, in delivery order.
        batches: Number of batches delivered.
        errors: Errors from individual lanes, in the order they happened.
        cancelled: Whether the fetch stopped early on cancellation.
    """
    fetched: list[Message] = field(default_factory=list)
    batches: int = 0
    errors: list[Exception] = field(default_factory=list)
    cancelled: bool = False

    @property
    def error(self) -> Exception | None:
        """The first error encountered across lanes, if any."""
        return self.errors[0] if self.errors else None


# Marks the end of a fetch on the queue
_DONE = object()


def split_chunks(uids: list[int], count: int) -> list[list[int]]:
    """Split into at most `count` contiguous chunks of near-equal size."""
    if not uids or count <= 0:
        return []
    size = -(-len(uids) // count)
    return [uids[i:i + size] for i in range(0, len(uids), size)]


class ParallelFetcher:
    """
    Multi-connection header fetch for one folder.

    Usage:
        >>> fetcher = ParallelFetcher(pool, account, "INBOX", folder_key="work:INBOX")
        >>> outcome = await fetcher.run(uids, on_batch=show)
        >>> if outcome.error:
        ...     logger.warning(outcome.error)
    """

    LANES = 4
    MAX_EXTRA_LANES = 2
    BATCH_SIZE = 50

    # Hard cap on UIDs per fetch, regardless of folder size
    MAX_TOTAL = 300

    # Wall-clock limit for the extra lanes (seconds)
    TIMEOUT = 120

    def __init__(
        self,
        pool: "ConnectionPool",
        account: "Account",
        folder: str,
        folder_key: str = "",
        lanes: int = LANES,
        max_extra_lanes: int = MAX_EXTRA_LANES,
        batch_size: int = BATCH_SIZE,
        max_total: int = MAX_TOTAL,
        timeout: float = TIMEOUT,
    ) -> None:
        self.pool = pool
        self.account = account
        self.folder = folder
        self.folder_key = folder_key or f"{account.name}:{folder}"
        self.lanes = max(1, lanes)
        self.max_extra_lanes = max(0, max_extra_lanes)
        self.batch_size = max(1, batch_size)
        self.max_total = max_total
        self.timeout = timeout

    def plan(self, uids: list[int]) -> list[list[int]]:
        """Newest `max_total` UIDs, descending, split into lane chunks."""
        newest = sorted(set(uids), reverse=True)
        if self.max_total > 0:
            newest = newest[:self.max_total]
        return split_chunks(newest, self.lanes)

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(
        self,
        uids: list[int],
        on_batch: BatchCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> FetchOutcome:
        """
        Fetch headers for `uids`, delivering each batch to `on_batch`.

        Args:
            uids: Candidate UIDs (any order). Only the newest max_total are
                  fetched.
            on_batch: Called with each batch as it arrives; may be async.
            cancel: Checked before each lane and each batch.

        Returns:
            FetchOutcome with everything delivered and any lane errors.
        """
        queue: asyncio.Queue = asyncio.Queue()
        outcome = FetchOutcome()
        producer = asyncio.create_task(self._produce(uids, queue, outcome, cancel))

        try:
            while True:
                batch = await queue.get()
                if batch is _DONE:
                    break
                outcome.fetched.extend(batch)
                outcome.batches += 1
                if on_batch is not None:
                    result = on_batch(batch)
                    if inspect.isawaitable(result):
                        await result
                queue.task_done()
            # Surfaces anything unexpected from the lanes
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

        return outcome

    async def stream(
        self,
        uids: list[int],
        cancel: CancelToken | None = None,
        outcome: FetchOutcome | None = None,
    ) -> AsyncIterator[list[Message]]:
        """
        Fetch headers for `uids`, yielding batches as they arrive.

        Pass an `outcome` to collect errors and cancellation state.
        """
        queue: asyncio.Queue = asyncio.Queue()
        outcome = outcome if outcome is not None else FetchOutcome()
        producer = asyncio.create_task(self._produce(uids, queue, outcome, cancel))

        try:
            while True:
                batch = await queue.get()
                if batch is _DONE:
                    break
                outcome.fetched.extend(batch)
                outcome.batches += 1
                yield batch
                queue.task_done()
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

    # =========================================================================
    # Lanes
    # =========================================================================

    async def _produce(
        self,
        uids: list[int],
        queue: asyncio.Queue,
        outcome: FetchOutcome,
        cancel: CancelToken | None,
    ) -> None:
        """Run all lanes, then put the end marker on the queue."""
        started = time.monotonic()
        try:
            chunks = self.plan(uids)
            if not chunks:
                return
            logger.info(
                f"Parallel fetch: {sum(len(c) for c in chunks)} UIDs in {len(chunks)} chunks "
                f"(capped from {len(uids)})"
            )

            # Lane 1 first, for a fast first render
            await self._run_lane(1, chunks[0], queue, outcome, cancel)

            rest = chunks[1:]
            if not rest or outcome.errors or self._cancelled(cancel, outcome):
                return
            if self.max_extra_lanes == 0:
                for index, chunk in enumerate(rest, start=2):
                    await self._run_lane(index, chunk, queue, outcome, cancel)
                return

            limit = asyncio.Semaphore(self.max_extra_lanes)

            async def extra_lane(index: int, chunk: list[int]) -> None:
                async with limit:
                    await self._run_lane(index, chunk, queue, outcome, cancel)

            lanes = [extra_lane(index, chunk) for index, chunk in enumerate(rest, start=2)]
            try:
                await asyncio.wait_for(asyncio.gather(*lanes), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Parallel fetch timed out after {self.timeout}s")
                outcome.errors.append(FetchFailed(f"Parallel fetch timed out after {self.timeout}s"))
        finally:
            logger.debug(f"Parallel fetch finished in {time.monotonic() - started:.2f}s")
            queue.put_nowait(_DONE)

    async def _run_lane(
        self,
        lane: int,
        chunk: list[int],
        queue: asyncio.Queue,
        outcome: FetchOutcome,
        cancel: CancelToken | None,
    ) -> None:
        """Fetch one chunk batch by batch on one connection."""
        if self._cancelled(cancel, outcome):
            logger.debug(f"Lane {lane}: skipped due to cancellation")
            return

        try:
            async with self.pool.connection(self.account, self.folder) as client:
                for start in range(0, len(chunk), self.batch_size):
                    if self._cancelled(cancel, outcome):
                        logger.debug(f"Lane {lane}: early cancellation requested")
                        return
                    batch = chunk[start:start + self.batch_size]
                    messages = await client.fetch_headers(batch, self.folder_key, batch_size=len(batch))
                    logger.debug(f"Lane {lane} batch: {len(messages)} messages")
                    if messages:
                        # Wait until the consumer has seen it, so the next
                        # cancel check reflects this batch
                        queue.put_nowait(messages)
                        await queue.join()
        except (IMAPError, TransportError) as e:
            logger.error(f"Lane {lane} error: {e}")
            outcome.errors.append(e)

    @staticmethod
    def _cancelled(cancel: CancelToken | None, outcome: FetchOutcome) -> bool:
        if cancel is not None and cancel.is_cancelled:
            outcome.cancelled = True
            return True
        return False
