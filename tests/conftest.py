import asyncio

import pytest

from db import SqliteStore
from limiter import CodeLimiter, ThrottleStore
from sessions import SessionStore


class FakeFetcher:
    def __init__(self, code=None):
        self.code = code
        self.calls = []

    async def fetch_code(self, email):
        self.calls.append(email)
        await asyncio.sleep(0)
        return self.code


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store():
    s = SqliteStore(":memory:")
    yield s
    s.con.close()


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def limiter(store, fetcher, clock):
    return CodeLimiter(store, fetcher, ThrottleStore(10, clock=clock))
