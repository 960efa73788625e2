import sys

import anyio
import pytest

from mcpwire.shared._exception_utils import collapse_exception_group, open_task_group

if sys.version_info < (3, 11):  # pragma: no cover
    from exceptiongroup import BaseExceptionGroup


class Cancelled(Exception):
    pass


def test_single_real_error_is_unwrapped():
    error = ValueError("real")
    group = BaseExceptionGroup("", [Cancelled(), error])
    assert collapse_exception_group(group, Cancelled) is error


def test_several_real_errors_stay_grouped():
    first, second = ValueError("a"), KeyError("b")
    collapsed = collapse_exception_group(BaseExceptionGroup("", [first, Cancelled(), second]), Cancelled)

    assert isinstance(collapsed, BaseExceptionGroup)
    assert list(collapsed.exceptions) == [first, second]


def test_only_cancellations_returns_first():
    first = Cancelled()
    assert collapse_exception_group(BaseExceptionGroup("", [first, Cancelled()]), Cancelled) is first


@pytest.mark.anyio
async def test_open_task_group_raises_real_error():
    async def fail():
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom") as exc_info:
        async with open_task_group() as tg:
            tg.start_soon(fail)
            tg.start_soon(anyio.sleep_forever)

    assert isinstance(exc_info.value.__cause__, BaseExceptionGroup)
