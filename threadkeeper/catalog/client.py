"""JSON-over-HTTP fetch and the shared fetch-with-retry primitive."""

import time
from typing import Any, Callable, Optional

import requests

from threadkeeper.core.errors import MalformedUpstreamData, OperationAborted, TransientFetchError
from threadkeeper.core.logger import setup_logger

logger = setup_logger(__name__)


class CatalogClient:
    """Fetches catalog and thread metadata.

    HTTP-level and parse-level failures surface as distinct exceptions.
    There is no retry here; callers go through ``fetch_with_retry``.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        user_agent: Optional[str] = None,
    ):
        self._session = session or requests.Session()
        self._timeout = timeout
        if user_agent:
            self._session.headers.update({"User-Agent": user_agent})

    def fetch_json(self, url: str) -> Any:
        try:
            response = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as e:
            raise TransientFetchError(f"Request failed: {e}", url=url) from e

        if not response.ok:
            raise TransientFetchError(
                f"HTTP error {response.status_code}", url=url, status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise MalformedUpstreamData(f"Invalid JSON payload: {e}", url=url) from e

    def close(self) -> None:
        self._session.close()


def fetch_with_retry(
    fetch: Callable[[str], Any],
    url: str,
    max_retries: int = 3,
    base_delay: float = 1.5,
    should_abort: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Call ``fetch(url)`` up to ``max_retries`` times with linear backoff.

    Raises:
        OperationAborted: if ``should_abort`` turns true between attempts.
        TransientFetchError: the last failure once attempts are exhausted.
    """
    last_error: Optional[TransientFetchError] = None
    for attempt in range(1, max_retries + 1):
        if should_abort is not None and should_abort():
            raise OperationAborted(f"Process stopped during fetch of {url}")
        try:
            return fetch(url)
        except TransientFetchError as e:
            last_error = e
            logger.warning(f"Fetch failed for {url}: {e}. Retry {attempt}/{max_retries}")
            if attempt == max_retries:
                logger.error(f"Max retries reached for {url}, giving up fetch")
                break
            sleep(base_delay * attempt)

    if last_error is None:
        raise TransientFetchError(f"Fetch failed for {url} after {max_retries} retries", url=url)
    raise last_error
