"""Helpers for the exception groups raised by anyio task groups.

A session runs its reader loop and every inbound request handler inside one
task group. When anything in there fails, the siblings are cancelled and the
caller sees a ``BaseExceptionGroup`` holding the real error plus the
cancellation noise. Callers almost always want the single real error back.
"""

from __future__ import annotations

import contextlib
import sys
from collections.abc import AsyncIterator

import anyio
import anyio.abc

if sys.version_info < (3, 11):  # pragma: no cover
    from exceptiongroup import BaseExceptionGroup


def collapse_exception_group(
    eg: BaseExceptionGroup,
    cancelled_type: type[BaseException] | None = None,
) -> BaseException:
    """Return the one meaningful exception inside ``eg``.

    * exactly one non-cancellation error: that error
    * several non-cancellation errors: the group without the cancellations
    * only cancellations: the first of them
    """
    if cancelled_type is None:
        cancelled_type = anyio.get_cancelled_exc_class()

    # split() matches leaf exceptions, never the group itself.
    _, real = eg.split(cancelled_type)
    if real is None:
        return eg.exceptions[0]
    if len(real.exceptions) == 1 and not isinstance(real.exceptions[0], BaseExceptionGroup):
        return real.exceptions[0]
    return real


def reraise_collapsed(eg: BaseExceptionGroup) -> None:
    """Raise the collapsed form of ``eg``, chained to the original group."""
    collapsed = collapse_exception_group(eg)
    if collapsed is eg:
        raise eg
    raise collapsed from eg


@contextlib.asynccontextmanager
async def open_task_group() -> AsyncIterator[anyio.abc.TaskGroup]:
    """``anyio.create_task_group()`` that raises the single real error directly.

    The original group stays reachable as ``__cause__``.
    """
    try:
        async with anyio.create_task_group() as tg:
            yield tg
    except BaseExceptionGroup as eg:
        reraise_collapsed(eg)
