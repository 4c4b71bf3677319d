"""Small helpers shared by the test modules."""

from datetime import datetime, timedelta
from typing import List
from unittest.mock import AsyncMock


class FakeClock:
    """Callable clock returning a fixed, manually advanced time."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def calls_for(mock: AsyncMock, query: str) -> List[tuple]:
    """Positional args of every await of ``mock`` with ``query`` as first argument."""
    return [c.args for c in mock.await_args_list if c.args and c.args[0] == query]
