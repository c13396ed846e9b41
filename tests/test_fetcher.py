import pytest
import requests

from ape_solidity_imports.exceptions import (
    FetchConnectionError,
    FetchHttpError,
    FetchTimeoutError,
    ResolutionTimeoutError,
)
from ape_solidity_imports.fetcher import DEFAULT_HEADERS, ContentCache, Fetcher

URL = "https://example.com/contracts/A.sol"
CONTENT = "contract A {}"


@pytest.fixture
def make_fetcher(make_session, sleeps):
    def fn(responses, retries=3, backoff=1.0):
        session = make_session(responses)
        return Fetcher(
            session=session, timeout=5, retries=retries, backoff=backoff, sleep=sleeps.append
        )

    return fn


def test_fetch(make_fetcher, sleeps):
    fetcher = make_fetcher({URL: CONTENT})
    assert fetcher.fetch(URL) == CONTENT
    assert fetcher.session.calls == [URL]
    assert sleeps == []


def test_fetch_sends_timeout_and_headers(mocker):
    session = mocker.MagicMock()
    session.get.return_value.status_code = 200
    session.get.return_value.text = CONTENT
    fetcher = Fetcher(session=session, timeout=7)
    assert fetcher.fetch(URL) == CONTENT
    session.get.assert_called_once_with(URL, timeout=7, headers=DEFAULT_HEADERS)


def test_fetch_retries_server_errors(make_fetcher, sleeps):
    fetcher = make_fetcher({URL: [500, 503, CONTENT]})
    assert fetcher.fetch(URL) == CONTENT
    assert len(fetcher.session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_fetch_exhausts_retries(make_fetcher, sleeps):
    fetcher = make_fetcher({URL: 500}, retries=3, backoff=0.5)
    with pytest.raises(FetchHttpError) as err:
        fetcher.fetch(URL)

    assert err.value.status == 500
    assert err.value.url == URL
    # The first attempt plus each retry.
    assert len(fetcher.session.calls) == 4
    assert sleeps == [0.5, 1.0, 2.0]


def test_fetch_does_not_retry_not_found(make_fetcher, sleeps):
    fetcher = make_fetcher({URL: 404})
    with pytest.raises(FetchHttpError, match="HTTP status 404"):
        fetcher.fetch(URL)

    assert len(fetcher.session.calls) == 1
    assert sleeps == []


def test_fetch_retries_rate_limit(make_fetcher, sleeps):
    fetcher = make_fetcher({URL: [429, CONTENT]})
    assert fetcher.fetch(URL) == CONTENT
    assert sleeps == [1.0]


def test_fetch_timeout(make_fetcher, sleeps):
    fetcher = make_fetcher({URL: requests.Timeout("read timed out")}, retries=1)
    with pytest.raises(FetchTimeoutError) as err:
        fetcher.fetch(URL)

    assert err.value.timeout == 5
    assert "timed out after 5s" in str(err.value)
    assert len(fetcher.session.calls) == 2


def test_fetch_connection_error(make_fetcher):
    fetcher = make_fetcher({URL: requests.ConnectionError("refused")}, retries=0)
    with pytest.raises(FetchConnectionError, match="refused"):
        fetcher.fetch(URL)


def test_fetch_no_retries(make_fetcher, sleeps):
    fetcher = make_fetcher({URL: 500}, retries=0)
    with pytest.raises(FetchHttpError):
        fetcher.fetch(URL)

    assert len(fetcher.session.calls) == 1
    assert sleeps == []


def test_from_config(config, session):
    fetcher = Fetcher.from_config(config, session=session)
    assert fetcher.timeout == config.fetch_timeout
    assert fetcher.retries == config.max_fetch_retries
    assert fetcher.backoff == config.fetch_backoff


class TestContentCache:
    def test_put_and_get(self):
        cache = ContentCache()
        assert cache.get("@foo/lib/A.sol") is None
        cache.put("@foo/lib/A.sol", CONTENT)
        assert cache.get("@foo/lib/A.sol") == CONTENT
        assert "@foo/lib/A.sol" in cache
        assert len(cache) == 1

    def test_failures(self):
        cache = ContentCache()
        error = FetchHttpError(URL, 404)
        cache.record_failure("@foo/lib/A.sol", error)
        assert cache.has_failed("@foo/lib/A.sol")
        assert cache.get_failure("@foo/lib/A.sol") is error
        assert "@foo/lib/A.sol" not in cache

        # Content replaces a recorded failure.
        cache.put("@foo/lib/A.sol", CONTENT)
        assert not cache.has_failed("@foo/lib/A.sol")

    def test_clear(self):
        cache = ContentCache()
        cache.put("@foo/lib/A.sol", CONTENT)
        cache.record_failure("@foo/lib/B.sol", FetchHttpError(URL, 404))
        cache.clear()
        assert len(cache) == 0
        assert not cache.has_failed("@foo/lib/B.sol")


def test_fetch_stops_retrying_at_deadline(make_session):
    now = [0.0]

    def sleep(seconds):
        now[0] += seconds

    session = make_session({URL: 500})
    fetcher = Fetcher(session=session, retries=3, backoff=10, sleep=sleep)
    with pytest.raises(ResolutionTimeoutError, match="timed out after 5.0s") as err:
        fetcher.fetch(URL, deadline=5.0, clock=lambda: now[0])

    assert isinstance(err.value.__cause__, FetchHttpError)
    assert len(session.calls) == 1
    assert now[0] == 0.0


def test_fetch_retries_within_deadline(make_session):
    now = [0.0]
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    session = make_session({URL: 500})
    fetcher = Fetcher(session=session, retries=3, backoff=1, sleep=sleep)
    with pytest.raises(ResolutionTimeoutError):
        fetcher.fetch(URL, deadline=5.0, clock=lambda: now[0])

    # Sleeping 4s more would end at 7s.
    assert sleeps == [1, 2]
    assert len(session.calls) == 3
    assert now[0] <= 5.0
