"""Abstract base class for listing source scrapers."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

import requests

from src.config import ScraperConfig, PipelineConfig
from src.models import Posting

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """What one full pass over the source produced.

    ``postings`` holds only urls the caller did not already know.
    ``live_urls`` is every url currently listed, known or not.
    """

    postings: list[Posting] = field(default_factory=list)
    live_urls: set[str] = field(default_factory=set)


class BaseScraper(ABC):
    """Base class that every listing source extends.

    Provides shared HTTP utilities (session management, rate limiting,
    retries) so individual scrapers only need to implement `scan()`.
    """

    def __init__(
        self,
        source_config: ScraperConfig,
        pipeline_config: PipelineConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.source_config = source_config
        self.pipeline_config = pipeline_config
        self.max_attempts = max(1, int(source_config.params.get("max_attempts", 3)))
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": pipeline_config.user_agent})
        self._sleep = sleep
        self._last_request_time: float = 0

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @abstractmethod
    def scan(self, known_urls: set[str]) -> ScanResult:
        """Read the whole listing.

        Postings whose url is in ``known_urls`` are left out of the result
        (and never detail-fetched), but still count as live. Raises
        SourceError when the listing itself cannot be read.
        """
        ...

    @property
    def name(self) -> str:
        return self.source_config.name

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _get(self, url: str, **kwargs) -> requests.Response:
        """Rate-limited GET request with retries."""
        return self._request("GET", url, **kwargs)

    def _post(self, url: str, **kwargs) -> requests.Response:
        """Rate-limited POST request with retries."""
        return self._request("POST", url, **kwargs)

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.pipeline_config.request_timeout_seconds)

        for attempt in range(1, self.max_attempts + 1):
            self._rate_limit()
            try:
                resp = self.session.request(method, url, **kwargs)
                resp.raise_for_status()
                return resp
            except requests.RequestException as exc:
                logger.warning(
                    "[%s] %s %s attempt %d/%d failed: %s",
                    self.name, method, url, attempt, self.max_attempts, exc,
                )
                if attempt == self.max_attempts:
                    raise
                self._sleep(2 ** attempt)

        # Unreachable, but keeps type checkers happy
        raise RuntimeError("Retry loop exited unexpectedly")

    def _rate_limit(self) -> None:
        """Enforce minimum delay between requests."""
        delay = self.pipeline_config.request_delay_seconds
        elapsed = time.monotonic() - self._last_request_time
        if elapsed < delay:
            self._sleep(delay - elapsed)
        self._last_request_time = time.monotonic()
