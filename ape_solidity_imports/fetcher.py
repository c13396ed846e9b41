import threading
import time
from collections.abc import Callable
from typing import Optional

import requests
from ape.logging import logger

from ape_solidity_imports.exceptions import (
    FetchConnectionError,
    FetchError,
    FetchHttpError,
    FetchTimeoutError,
    ResolutionTimeoutError,
)

DEFAULT_HEADERS = {
    "Accept": "text/plain",
    "User-Agent": "ape-solidity-imports",
}


class ContentCache:
    """
    Fetched library content and permanent fetch failures, keyed by the
    logical import path (e.g. ``@openzeppelin/contracts/access/Ownable.sol``)
    rather than the URL it came from.

    Lives as long as the process and is shared by every resolution pass.
    Entries are never invalidated; the same path always maps to the
    same content, so concurrent duplicate writes are harmless.
    """

    def __init__(self):
        self._content: dict[str, str] = {}
        self._failures: dict[str, FetchError] = {}
        self._lock = threading.Lock()

    def __contains__(self, import_path: str) -> bool:
        return import_path in self._content

    def __len__(self) -> int:
        return len(self._content)

    def get(self, import_path: str) -> Optional[str]:
        return self._content.get(import_path)

    def put(self, import_path: str, content: str):
        with self._lock:
            self._content[import_path] = content
            self._failures.pop(import_path, None)

    def has_failed(self, import_path: str) -> bool:
        return import_path in self._failures

    def get_failure(self, import_path: str) -> Optional[FetchError]:
        return self._failures.get(import_path)

    def record_failure(self, import_path: str, error: FetchError):
        with self._lock:
            self._failures[import_path] = error

    def clear(self):
        with self._lock:
            self._content.clear()
            self._failures.clear()


# Cache shared by all requests in this process.
content_cache = ContentCache()


class Fetcher:
    """
    Fetches raw text over HTTP(S) with a per-attempt timeout and
    bounded retries using exponential backoff.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        retries: int = 3,
        backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "Fetcher":
        return cls(
            session=session,
            timeout=config.fetch_timeout,
            retries=config.max_fetch_retries,
            backoff=config.fetch_backoff,
        )

    def fetch(
        self,
        url: str,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> str:
        """
        Fetch the text at the given URL.

        Args:
            url (str): The URL to GET.
            deadline (Optional[float]): Absolute time (of ``clock``) that no
              retry backoff may sleep past.
            clock (Callable[[], float]): The clock ``deadline`` is measured on.

        Raises:
            :class:`~ape_solidity_imports.exceptions.FetchError`: When all attempts
              failed. The error from the last attempt is raised.
            :class:`~ape_solidity_imports.exceptions.ResolutionTimeoutError`: When
              the next backoff would end after the deadline.

        Returns:
            str: The response body.
        """
        budget = None if deadline is None else max(deadline - clock(), 0.0)
        attempt = 0
        while True:
            try:
                return self._get(url)
            except FetchError as err:
                if not err.retryable or attempt >= self.retries:
                    raise

                delay = self.backoff * 2**attempt
                if deadline is not None and clock() + delay >= deadline:
                    logger.error(f"Not retrying fetch past the deadline: {url}")
                    raise ResolutionTimeoutError(budget or 0.0) from err

                logger.warning(
                    f"Retrying fetch in {delay}s ({self.retries - attempt} retries left): {url}"
                )
                self._sleep(delay)
                attempt += 1

    def _get(self, url: str) -> str:
        try:
            response = self.session.get(url, timeout=self.timeout, headers=DEFAULT_HEADERS)
        except requests.Timeout as err:
            raise FetchTimeoutError(url, self.timeout) from err
        except requests.RequestException as err:
            raise FetchConnectionError(url, f"{err}") from err

        if not 200 <= response.status_code < 300:
            raise FetchHttpError(url, response.status_code)

        return response.text
