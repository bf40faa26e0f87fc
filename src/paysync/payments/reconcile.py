"""Cache-coherent resolve-or-create loop shared by every catalog resolution.

The local cache can hold duplicate, stale or dead rows for a subject. A
resolution therefore runs in four steps:

1. scan    - load the cached candidate rows for the subject
2. verify  - fetch each candidate from the provider and test it against the
             wanted values; the first accepted candidate wins
3. heal    - a candidate the provider disagrees with is corrected locally
             (rows are updated, never deleted) and the scan continues
4. create  - when no candidate survives, take the subject's creation lock,
             scan again, and only then create the provider artifact

A failed provider lookup skips the candidate. Failures inside `create`
propagate to the caller.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from paysync.db.pool import open_connection
from paysync.providers.base import ProviderError

logger = logging.getLogger(__name__)

C = TypeVar("C")  # cached candidate row
R = TypeVar("R")  # provider record


@dataclass
class Resolution(Generic[C, R]):
    """Outcome of a resolution: the provider record and the row it came from."""

    value: R
    candidate: Optional[C] = None

    @property
    def created(self) -> bool:
        return self.candidate is None


class CreationLock(ABC):
    """Mutual exclusion around first-time creation of a subject's artifact."""

    @abstractmethod
    def hold(self, key: str) -> AsyncContextManager[None]:
        """Async context manager holding the lock for `key`."""


class LocalCreationLock(CreationLock):
    """Per-key asyncio locks; serializes creation within one process.

    A key's lock is dropped once no caller holds or waits for it.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class AdvisoryCreationLock(CreationLock):
    """
    Postgres session advisory lock keyed on hashtext(key).

    Serializes creation across processes sharing the database. Each hold
    opens its own connection outside the pool, so waiting for the lock never
    takes a pool slot from the stores used inside the locked section.
    Closing the connection also releases a lock left behind by cancellation.
    """

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        conn = await open_connection()
        try:
            await conn.execute("SELECT pg_advisory_lock(hashtext($1))", key)
            try:
                yield
            finally:
                await conn.execute("SELECT pg_advisory_unlock(hashtext($1))", key)
        finally:
            await conn.close()


async def _scan(
    subject: str,
    scan: Callable[[], Awaitable[Iterable[C]]],
    fetch: Optional[Callable[[C], Awaitable[R]]],
    accept: Callable[[C, R], bool],
    heal: Optional[Callable[[C, R], Awaitable[None]]],
) -> Optional[Resolution[C, R]]:
    for candidate in await scan():
        if fetch is None:
            remote = candidate
        else:
            try:
                remote = await fetch(candidate)
            except ProviderError as e:
                logger.warning(f"{subject}: lookup of cached candidate failed, skipping: {e}")
                continue

        if accept(candidate, remote):
            return Resolution(value=remote, candidate=candidate)

        if heal is not None:
            await heal(candidate, remote)

    return None


async def resolve_or_create(
    subject: str,
    *,
    scan: Callable[[], Awaitable[Iterable[C]]],
    accept: Callable[[C, R], bool],
    create: Callable[[], Awaitable[R]],
    lock: CreationLock,
    fetch: Optional[Callable[[C], Awaitable[R]]] = None,
    heal: Optional[Callable[[C, R], Awaitable[None]]] = None,
) -> Resolution[C, R]:
    """
    Run scan → verify → heal → create for one subject.

    Args:
        subject: Lock key and log label, e.g. "price:prod_1:usd:month:500:recurring"
        scan: Loads cached candidates, oldest first
        accept: Decides whether a verified candidate is canonical
        create: Creates and persists a new artifact; called at most once, under the lock
        lock: Creation lock shared by all resolutions
        fetch: Provider lookup for a candidate. None treats the candidate itself
               as authoritative (nothing to verify remotely)
        heal: Local correction for a candidate the provider disagrees with

    Returns:
        Resolution with the accepted or created record

    Raises:
        ProviderError: If creation fails
    """
    found = await _scan(subject, scan, fetch, accept, heal)
    if found is not None:
        return found

    async with lock.hold(subject):
        # Another caller may have created it while we waited for the lock
        found = await _scan(subject, scan, fetch, accept, heal)
        if found is not None:
            return found

        logger.info(f"{subject}: no verified cached candidate, creating")
        return Resolution(value=await create())
