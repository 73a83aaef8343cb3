import logging
import os
import threading
from typing import Any, Callable, Dict, Optional

from diskcache import Cache

from report_params import ReportRequest

DEFAULT_TTL_SECONDS = 604800


class ReportCache:
    """
    Disk-backed report results keyed by ReportRequest.cache_key.

    Each dashboard view has at most one current request, tracked by
    identity: complete() and cancel() must get the same ReportRequest object
    that was passed to begin(). A result is only written while its request is
    still the view's current one, so a request superseded by a newer filter
    selection (or cancelled) never lands in the cache, even when the newer
    request has the same cache key.
    """

    def __init__(
        self,
        directory: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        logger: logging.Logger = None,
    ):
        os.makedirs(directory, exist_ok=True)
        self.cache = Cache(directory)
        self.ttl_seconds = ttl_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._current: Dict[str, ReportRequest] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg, logger: logging.Logger = None) -> "ReportCache":
        directory = cfg.get_path("paths.report_cache_dir", create=True)
        return cls(
            str(directory),
            ttl_seconds=cfg.get("cache.ttl_seconds", DEFAULT_TTL_SECONDS),
            logger=logger,
        )

    def get(self, request: ReportRequest) -> Optional[Any]:
        return self.cache.get(request.cache_key)

    def begin(self, view: str, request: ReportRequest) -> None:
        with self._lock:
            previous = self._current.get(view)
            self._current[view] = request
        if previous is not None and previous is not request:
            self.logger.debug(
                f"View {view}: request {previous.cache_key} superseded by {request.cache_key}"
            )

    def cancel(self, view: str, request: ReportRequest) -> None:
        with self._lock:
            if self._current.get(view) is request:
                del self._current[view]

    def is_current(self, view: str, request: ReportRequest) -> bool:
        with self._lock:
            return self._current.get(view) is request

    def complete(self, view: str, request: ReportRequest, result: Any) -> bool:
        """Store result if the request is still current for view; returns whether it was stored."""
        with self._lock:
            if self._current.get(view) is not request:
                self.logger.info(
                    f"View {view}: discarding stale result for {request.cache_key}"
                )
                return False
            self.cache.set(request.cache_key, result, expire=self.ttl_seconds)
        return True

    def fetch(
        self, view: str, request: ReportRequest, compute: Callable[[ReportRequest], Any]
    ) -> Any:
        """Cached result, or compute it as the view's current request."""
        self.begin(view, request)
        cached = self.get(request)
        if cached is not None:
            return cached
        result = compute(request)
        self.complete(view, request, result)
        return result

    def close(self):
        self.cache.close()
