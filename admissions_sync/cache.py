"""Namespace-scoped purge of derived caches after relational data changes."""

from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
import logging
import threading
import time
from typing import Protocol

import redis

from admissions_sync.config import Settings
from admissions_sync.errors import PurgeError
from admissions_sync.schemas import InvalidationResult


logger = logging.getLogger(__name__)

_RETRYABLE_PURGE_ERRORS = (redis.exceptions.RedisError, ConnectionError, TimeoutError)


@dataclass(frozen=True)
class CacheNamespace:
    name: str
    prefix: str

    def pattern(self, key_root: str = "") -> str:
        return f"{key_root}{self.prefix}*"


RECOMMENDATIONS = CacheNamespace("rec", "rec:")
USER_PREFERENCES = CacheNamespace("user_preferences", "user_preferences:")
USER_EMBEDDINGS = CacheNamespace("user_embedding", "user_embedding:")

DEFAULT_NAMESPACES: tuple[CacheNamespace, ...] = (RECOMMENDATIONS, USER_PREFERENCES, USER_EMBEDDINGS)


def namespaces_by_name(names: Iterable[str]) -> list[CacheNamespace]:
    known = {namespace.name: namespace for namespace in DEFAULT_NAMESPACES}
    selected = []
    for name in names:
        if name not in known:
            raise KeyError(f"unknown cache namespace '{name}'")
        selected.append(known[name])
    return selected


class CacheClient(Protocol):
    def scan(self, cursor: int = 0, match: str | None = None, count: int | None = None) -> tuple[int, list]: ...

    def delete(self, *names) -> int: ...


def build_cache_client(settings: Settings) -> redis.Redis:
    # redis-py connects lazily, so building the client never touches the network.
    return redis.Redis(
        host=settings.cache_host,
        port=settings.cache_port,
        password=settings.cache_password,
        db=settings.cache_db,
        socket_timeout=settings.call_timeout_seconds,
        socket_connect_timeout=settings.call_timeout_seconds,
    )


class InvalidationCoordinator:
    def __init__(
        self,
        client: CacheClient,
        settings: Settings,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.cancel_event = cancel_event or threading.Event()

    def invalidate(
        self,
        namespaces: Sequence[CacheNamespace],
        reason: str,
        cursors: dict[str, int] | None = None,
    ) -> InvalidationResult:
        """Delete every key under each namespace prefix.

        Namespaces are purged concurrently and independently. ``cursors`` resumes
        a namespace from the scan cursor reported by an earlier, interrupted call.
        """
        result = InvalidationResult()
        if not namespaces:
            return result

        start_cursors = cursors or {}
        logger.info("invalidating cache namespaces", extra={"namespaces": [ns.name for ns in namespaces], "reason": reason})

        with ThreadPoolExecutor(max_workers=len(namespaces), thread_name_prefix="purge") as pool:
            futures = {
                pool.submit(self._purge_namespace, namespace, start_cursors.get(namespace.name, 0)): namespace
                for namespace in namespaces
            }
            for future in as_completed(futures):
                namespace = futures[future]
                try:
                    purged, resume_cursor = future.result()
                except PurgeError as exc:
                    result.purged[namespace.name] = exc.purged
                    result.failures[namespace.name] = str(exc)
                    result.cursors[namespace.name] = exc.cursor
                    logger.error(
                        "namespace purge failed",
                        extra={"namespace": namespace.name, "cursor": exc.cursor, "error": str(exc.cause)},
                    )
                    continue

                result.purged[namespace.name] = purged
                if resume_cursor is not None:
                    result.cancelled = True
                    result.cursors[namespace.name] = resume_cursor

        logger.info("cache invalidation finished", extra={"purged": result.purged, "reason": reason})
        return result

    def _purge_namespace(self, namespace: CacheNamespace, cursor: int) -> tuple[int, int | None]:
        pattern = namespace.pattern(self.settings.cache_key_root)
        purged = 0
        failures = 0
        page: list | None = None
        next_cursor = cursor

        while True:
            if page is None and self.cancel_event.is_set():
                logger.warning("purge cancelled between scan pages", extra={"namespace": namespace.name, "cursor": cursor})
                return purged, cursor

            try:
                if page is None:
                    next_cursor, keys = self.client.scan(cursor=cursor, match=pattern, count=self.settings.scan_page_size)
                    page = list(keys)
                # Deleted chunks leave the page, so a retry only repeats what is left.
                while page:
                    chunk = page[: self.settings.purge_chunk_size]
                    purged += int(self.client.delete(*chunk))
                    del page[: len(chunk)]
            except _RETRYABLE_PURGE_ERRORS as exc:
                failures += 1
                if failures > self.settings.max_call_retries:
                    raise PurgeError(namespace.name, cursor, exc, purged=purged) from exc
                delay = self.settings.retry_backoff_seconds * (2 ** (failures - 1))
                logger.warning(
                    "purge page failed, retrying from cursor",
                    extra={"namespace": namespace.name, "cursor": cursor, "attempt": failures, "delay_seconds": delay},
                )
                time.sleep(delay)
                continue

            failures = 0
            page = None
            cursor = int(next_cursor)
            if cursor == 0:
                return purged, None
