from typing import Optional, Union

import pytest

from ape_solidity_imports.compiler import SolidityImportsConfig
from ape_solidity_imports.fetcher import ContentCache, Fetcher
from ape_solidity_imports.registry import OPENZEPPELIN_RAW, LibraryRegistry
from ape_solidity_imports.resolver import ResolutionEngine

ResponseValue = Union[str, int, Exception]


def oz_url(path: str, version: str = "5.0") -> str:
    return f"{OPENZEPPELIN_RAW}/release-v{version}/contracts/{path}"


class FakeResponse:
    def __init__(self, text: str = "", status_code: int = 200):
        self.text = text
        self.status_code = status_code


class FakeSession:
    """
    Stands in for ``requests.Session``. Each URL maps to response text,
    a status code, an exception to raise, or a list of those to use in turn.
    Unknown URLs are 404s.
    """

    def __init__(self, responses: Optional[dict] = None):
        self.responses: dict[str, Union[ResponseValue, list[ResponseValue]]] = dict(
            responses or {}
        )
        self.calls: list[str] = []

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.calls.append(url)
        value = self.responses.get(url, 404)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]

        if isinstance(value, Exception):
            raise value

        elif isinstance(value, int):
            return FakeResponse(status_code=value)

        return FakeResponse(text=value)

    def count(self, url: str) -> int:
        return self.calls.count(url)


@pytest.fixture
def config():
    return SolidityImportsConfig(
        max_fetch_retries=1, fetch_backoff=0, fetch_timeout=1, max_imports=20
    )


@pytest.fixture
def registry():
    return LibraryRegistry()


@pytest.fixture
def cache():
    # A fresh cache per test instead of the process-wide one.
    return ContentCache()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fetcher(session, sleeps):
    return Fetcher(session=session, timeout=1, retries=1, backoff=0, sleep=sleeps.append)


@pytest.fixture
def engine(registry, cache, fetcher):
    return ResolutionEngine(registry=registry, cache=cache, fetcher=fetcher, max_imports=20)


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def url():
    return oz_url
