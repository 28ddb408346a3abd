"""
Bounded-concurrency batch execution with partial-failure aggregation.

Every multi-item operation of the agent (reading the files of one
request, scanning many requests, renewing many certificates) runs through
the primitives in this module:

- CompletionCounter: counts outstanding operations and resolves a single
  future exactly once, when the registration phase is sealed and nothing
  is pending any more.
- ListResults / KeyResults: result storage strategies. Successful values
  and failures are appended in settlement order, or written under a
  caller-supplied key.
- ListAggregator / KeyAggregator: thin wrappers pairing a counter with a
  storage strategy. ListAggregator.pack adds the concurrency bound.

Failures of individual operations never propagate out of an aggregator;
they are collected as results. The only exception that escapes is
CompletionCounterError, which means the accounting itself is broken.
"""

import asyncio
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Hashable,
    Iterable,
    List,
    Optional,
    TypeVar,
)

from .logger import StructuredLogger, null_logger

R = TypeVar("R")


class CompletionCounterError(RuntimeError):
    """Raised when completion accounting is violated (e.g. double settlement)."""
    pass


@dataclass
class ListResults:
    """Ordered outcomes of a batch, in settlement order."""
    values: List[Any] = field(default_factory=list)
    errors: List[BaseException] = field(default_factory=list)

    def record(self, key: Any, value: Any) -> None:
        self.values.append(value)

    def record_error(self, key: Any, error: BaseException) -> None:
        self.errors.append(error)

    def merge(self, other: "ListResults") -> None:
        """Append the outcomes of another result set."""
        self.values.extend(other.values)
        self.errors.extend(other.errors)


@dataclass
class KeyResults:
    """Outcomes of named operations, one entry per key."""
    keyset: Dict[Hashable, Any] = field(default_factory=dict)
    errset: Dict[Hashable, BaseException] = field(default_factory=dict)

    def record(self, key: Hashable, value: Any) -> None:
        self.keyset[key] = value

    def record_error(self, key: Hashable, error: BaseException) -> None:
        self.errset[key] = error


class CompletionCounter(Generic[R]):
    """
    Counts outstanding operations and signals completion exactly once.

    The counter is complete when seal() has been called and the pending
    count is zero. Completion resolves the future returned by wait() with
    the result holder. Completion is terminal: registering more work or
    settling more work than was registered raises CompletionCounterError.

    Must be created from within a running event loop.
    """

    def __init__(self, results: R):
        self.pending = 0
        self.sealed = False
        self.results = results
        self._done: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def complete(self) -> bool:
        """Check if the terminal future has been resolved."""
        return self._done.done()

    def register(self, count: int = 1) -> None:
        """
        Add outstanding operations.

        Args:
            count: Number of operations to add

        Raises:
            CompletionCounterError: If the counter is sealed or complete
        """
        if count < 0:
            raise ValueError(f"count must not be negative, got {count}")
        if self.complete:
            raise CompletionCounterError("Cannot register work on a completed counter")
        if self.sealed:
            raise CompletionCounterError("Cannot register work on a sealed counter")
        self.pending += count

    def settle(self, count: int = 1) -> None:
        """
        Account for operations that have finished, successfully or not.

        Args:
            count: Number of operations that settled

        Raises:
            CompletionCounterError: If more operations settle than were registered
        """
        self.pending -= count
        if self.pending < 0:
            error = CompletionCounterError(
                f"Pending count went negative ({self.pending}): operation settled twice"
            )
            if not self._done.done():
                self._done.set_exception(error)
            raise error
        self._maybe_complete()

    def seal(self) -> None:
        """
        Close the registration phase.

        Completes immediately when nothing is pending, so a counter with
        zero registered operations still completes.
        """
        self.sealed = True
        self._maybe_complete()

    def abort(self, error: CompletionCounterError) -> None:
        """
        Fail the counter with an accounting error from a nested batch.

        Waiters get the error instead of the results.
        """
        if not self._done.done():
            self._done.set_exception(error)

    def _maybe_complete(self) -> None:
        if self.sealed and self.pending == 0 and not self._done.done():
            self._done.set_result(self.results)

    async def wait(self) -> R:
        """Wait for completion and return the result holder."""
        return await self._done


def _track(counter: CompletionCounter, key: Any, awaitable: Awaitable) -> asyncio.Future:
    """
    Register one operation with a counter and store its outcome on settlement.

    Args:
        counter: Counter owning the operation
        key: Storage key passed to the result strategy
        awaitable: Coroutine or future to run

    Returns:
        The scheduled task
    """
    counter.register(1)
    try:
        task = asyncio.ensure_future(awaitable)
    except TypeError:
        # Not awaitable: nothing was started, so nothing will settle.
        counter.pending -= 1
        raise

    def _settled(fut: asyncio.Future) -> None:
        if fut.cancelled():
            counter.results.record_error(key, asyncio.CancelledError())
        elif fut.exception() is not None:
            error = fut.exception()
            if isinstance(error, CompletionCounterError):
                counter.abort(error)
            counter.results.record_error(key, error)
        else:
            counter.results.record(key, fut.result())
        counter.settle(1)

    task.add_done_callback(_settled)
    return task


def partition(items: Iterable[Any], size: int) -> List[List[Any]]:
    """
    Split items into consecutive groups of at most `size`, in input order.

    Args:
        items: Items to group
        size: Maximum group size (positive)

    Returns:
        List of groups

    Example:
        >>> [len(g) for g in partition(range(7), 3)]
        [3, 3, 1]
    """
    if not isinstance(size, int) or isinstance(size, bool) or size < 1:
        raise ValueError(f"Group size must be a positive integer, got {size!r}")

    groups: List[List[Any]] = []
    group: List[Any] = []
    for item in items:
        group.append(item)
        if len(group) >= size:
            groups.append(group)
            group = []
    if group:
        groups.append(group)
    return groups


class ListAggregator:
    """
    Collects the outcomes of many operations into a ListResults.

    Values and errors are stored in settlement order, not submission
    order. An aggregator belongs to a single batch run.
    """

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self.logger = logger or null_logger()
        self.counter: CompletionCounter[ListResults] = CompletionCounter(ListResults())

    @property
    def results(self) -> ListResults:
        return self.counter.results

    def push(self, awaitable: Awaitable) -> asyncio.Future:
        """Add an operation; its value or error lands in the results."""
        return _track(self.counter, None, awaitable)

    async def wait(self) -> ListResults:
        """Seal the aggregator and wait for every pushed operation."""
        self.counter.seal()
        return await self.counter.wait()

    async def pack(
        self,
        items: Iterable[Any],
        concurrency: int,
        operation: Callable[[Any], Awaitable],
    ) -> ListResults:
        """
        Run an operation over items with at most `concurrency` in flight.

        Items are grouped in input order. Groups run strictly one after
        the other; the items of a group run concurrently. An exception
        raised while building an item's operation, or while running a
        group, is recorded in the errors instead of aborting the batch.

        Args:
            items: Items to process
            concurrency: Maximum number of operations in flight
            operation: Callable returning an awaitable for one item

        Returns:
            ListResults with every item's outcome
        """
        groups = partition(items, concurrency)
        total = sum(len(g) for g in groups)
        self.counter.register(len(groups))
        self.counter.seal()

        if groups:
            self.logger.debug(
                f"Running {total} item(s) in {len(groups)} group(s) of up to {concurrency}"
            )

        for index, group in enumerate(groups, start=1):
            try:
                self.logger.debug(f"Starting group {index}/{len(groups)} ({len(group)} item(s))")
                group_results = await self._run_group(group, operation)
                self.results.merge(group_results)
            except CompletionCounterError:
                raise
            except Exception as e:
                self.logger.warning(f"Group {index}/{len(groups)} failed: {e}")
                self.results.record_error(None, e)
            finally:
                self.counter.settle(1)

        return await self.counter.wait()

    async def _run_group(
        self,
        group: List[Any],
        operation: Callable[[Any], Awaitable],
    ) -> ListResults:
        """Run one group concurrently and wait until all of it settled."""
        barrier = ListAggregator(self.logger)
        for item in group:
            try:
                barrier.push(operation(item))
            except CompletionCounterError:
                raise
            except Exception as e:
                self.logger.debug(f"Could not start operation for {item!r}: {e}")
                barrier.results.record_error(None, e)
        return await barrier.wait()


class KeyAggregator:
    """
    Collects the outcomes of a small set of named operations.

    Each key ends up in exactly one of keyset (success) or errset
    (failure), so callers can tell which sub-operation failed.
    """

    def __init__(self):
        self.counter: CompletionCounter[KeyResults] = CompletionCounter(KeyResults())
        self._keys = set()

    @property
    def results(self) -> KeyResults:
        return self.counter.results

    def add(self, key: Hashable, awaitable: Awaitable) -> asyncio.Future:
        """
        Add a named operation.

        Raises:
            ValueError: If the key was already added
        """
        if key in self._keys:
            raise ValueError(f"Duplicate key: {key!r}")
        task = _track(self.counter, key, awaitable)
        self._keys.add(key)
        return task

    async def wait(self) -> KeyResults:
        """Seal the aggregator and wait for every named operation."""
        self.counter.seal()
        return await self.counter.wait()
