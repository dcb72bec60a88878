"""Splits bulk mutations into batches that fit a backend's per-call limit."""
import typing as t

import zrlog

from roverfs.exc import RoverHalt
from .base import BatchMutationError

T = t.TypeVar("T")


def partition(items: t.Sequence[T], batch_limit: int) -> t.Iterable[list[T]]:
    """Yield consecutive chunks of at most batch_limit items, in order."""
    if batch_limit < 1:
        raise ValueError(f"Batch limit must be positive [actual {batch_limit}]")
    items = list(items)
    for start in range(0, len(items), batch_limit):
        yield items[start:start + batch_limit]


def apply_batched(items: t.Sequence[T], batch_limit: int, operation: t.Callable[[list[T]], t.Any]) -> int:
    """Call operation once per batch; return the number of batches issued.

        A failing batch raises BatchMutationError. Batches already applied stay applied.
    """
    log = zrlog.get_logger("roverfs.storage.batch")
    applied = 0
    calls = 0
    for idx, batch in enumerate(partition(items, batch_limit)):
        try:
            operation(batch)
        except RoverHalt:
            raise
        except Exception as ex:
            log.error(f"Batch [{idx}] of {len(batch)} items failed after {applied} items were applied")
            raise BatchMutationError(idx, applied, ex) from ex
        applied += len(batch)
        calls += 1
    log.debug(f"Applied {applied} items in {calls} batches")
    return calls
