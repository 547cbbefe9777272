"""Bounded, order-preserving parallel map over a thread pool.

Used by batch reconciliation to process many card fingerprints with at most
``concurrency`` store round-trips in flight.

- ``p_map(items, mapper, concurrency=N)`` runs ``mapper`` over ``items`` with
  a sliding submission window of ``N`` and returns results in input order.
- ``stop_on_error`` (default True) fails fast on the first mapper error;
  when False, every submitted item runs and failures are raised together as
  an ``ExceptionGroup``.
- ``cancel_event``: once set, no further items are submitted. Items already
  running finish normally and their results are kept; items never started
  are simply absent from the output.
- ``p_map_skip``: a mapper may return this sentinel to drop its item.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


class _Skip:
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "p_map_skip"


p_map_skip: object = _Skip()


def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT | object],
    *,
    concurrency: int,
    stop_on_error: bool = True,
    cancel_event: threading.Event | None = None,
) -> list[OutT]:
    """Map ``iterable`` through ``mapper`` with at most ``concurrency`` calls running.

    The input is consumed lazily, one item per free slot.
    """

    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    source = enumerate(iterable)
    results: dict[int, object] = {}
    errors: list[Exception] = []
    pending: dict[Future, int] = {}

    def _cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def _submit_next(pool: ThreadPoolExecutor) -> bool:
        if _cancelled():
            return False
        try:
            idx, item = next(source)
        except StopIteration:
            return False
        pending[pool.submit(mapper, item)] = idx
        return True

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        for _ in range(concurrency):
            if not _submit_next(pool):
                break

        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = pending.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception as e:
                    if stop_on_error:
                        pool.shutdown(wait=False, cancel_futures=True)
                        raise
                    errors.append(e)
            for _ in range(len(done)):
                if not _submit_next(pool):
                    break

    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)

    return [
        results[i]  # type: ignore[misc]
        for i in sorted(results)
        if results[i] is not p_map_skip
    ]


__all__ = ["p_map", "p_map_skip"]
