"""Bounded, order-preserving parallel map over a ``ThreadPoolExecutor``.

``p_map`` keeps at most ``concurrency`` mapper calls in flight, tops the
window up as calls finish, and returns results in input order. An optional
:class:`~.rate_limit.RateLimiter` is acquired inside the worker before every
mapper call, so the limit holds across all workers.

Error handling mirrors the batch semantics of the pipeline:

- ``stop_on_error=True`` (default): the first failure propagates and work that
  has not started is cancelled.
- ``stop_on_error=False``: every item runs; failures are raised together as an
  ``ExceptionGroup`` at the end.

Mappers may return ``p_map_skip`` to drop their item from the output.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TypeVar

from .rate_limit import RateLimiter

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
    limiter: RateLimiter | None = None,
) -> list[OutT]:
    """Map ``iterable`` through ``mapper`` with bounded concurrency."""

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    def _call(item: InT) -> OutT | object:
        if limiter is not None:
            limiter.acquire()
        return mapper(item)

    # Lazily consumed so large inputs are never fully materialized.
    it = enumerate(iterable)
    results: dict[int, OutT | object] = {}
    errors: list[Exception] = []
    in_flight: dict[Future, int] = {}
    submitted = 0

    def _submit_next(pool: ThreadPoolExecutor) -> bool:
        nonlocal submitted
        try:
            idx, item = next(it)
        except StopIteration:
            return False
        in_flight[pool.submit(_call, item)] = idx
        submitted += 1
        return True

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        for _ in range(concurrency):
            if not _submit_next(pool):
                break

        while in_flight:
            done, _ = wait(set(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                idx = in_flight.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception as e:  # noqa: BLE001
                    if stop_on_error:
                        for pending in in_flight:
                            pending.cancel()
                        pool.shutdown(wait=False, cancel_futures=True)
                        raise
                    errors.append(e)
            for _ in range(len(done)):
                if not _submit_next(pool):
                    break

    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)

    out: list[OutT] = []
    for i in range(submitted):
        val = results.get(i, p_map_skip)
        if val is p_map_skip:
            continue
        out.append(val)  # type: ignore[arg-type]
    return out


__all__ = ["p_map", "p_map_skip"]
