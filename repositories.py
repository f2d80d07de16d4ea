from abc import ABC, abstractmethod
from typing import AsyncContextManager, AsyncIterator, Dict, List, Optional, Tuple
from collections import defaultdict
from contextlib import asynccontextmanager
import asyncio

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from errors import StoreUnavailableError


def balance_key(account: str) -> str:
    return f"{account}/balance"


class BalanceTransaction(ABC):
    """Watch, read, then conditionally write on a single connection."""

    @abstractmethod
    async def watch(self, *keys: str) -> None:
        """Mark keys so that commit fails if any of them changes."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read a key inside the watch. Returns None if the key is absent."""
        pass

    @abstractmethod
    def queue_write(self, key: str, value: int) -> None:
        """Stage a write to be applied on commit."""
        pass

    @abstractmethod
    async def commit(self) -> Optional[List]:
        """Apply staged writes atomically.

        Returns the per-write results, or None if a watched key changed
        since the watch and nothing was written.
        """
        pass

    @abstractmethod
    async def discard(self) -> None:
        """Drop staged writes and the watch."""
        pass


class BalanceStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a value. Returns None if the key doesn't exist."""
        pass

    @abstractmethod
    async def set(self, key: str, value: int) -> None:
        """Unconditional write."""
        pass

    @abstractmethod
    def transaction(self) -> AsyncContextManager[BalanceTransaction]:
        """Async context manager yielding a fresh BalanceTransaction."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check the store answers."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        pass


def _connection_lost(e: WatchError) -> bool:
    """redis-py wraps a connection drop on a watching pipeline in WatchError."""
    cause = e.__cause__ or e.__context__
    return isinstance(cause, (RedisConnectionError, RedisTimeoutError))


@asynccontextmanager
async def _translate_errors():
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as e:
        raise StoreUnavailableError(str(e)) from e
    except WatchError as e:
        if _connection_lost(e):
            raise StoreUnavailableError(str(e)) from e
        raise


class RedisBalanceTransaction(BalanceTransaction):
    def __init__(self, pipe: aioredis.client.Pipeline):
        self.pipe = pipe
        self.writes: List[Tuple[str, int]] = []

    async def watch(self, *keys: str) -> None:
        await self.pipe.watch(*keys)

    async def get(self, key: str) -> Optional[str]:
        # Pipeline executes immediately while watching, before multi()
        return await self.pipe.get(key)

    def queue_write(self, key: str, value: int) -> None:
        self.writes.append((key, value))

    async def commit(self) -> Optional[List]:
        self.pipe.multi()
        for key, value in self.writes:
            self.pipe.set(key, value)
        self.writes = []
        try:
            return await self.pipe.execute()
        except WatchError as e:
            # EXEC may have been applied before the connection dropped
            if _connection_lost(e):
                raise StoreUnavailableError(str(e)) from e
            return None

    async def discard(self) -> None:
        self.writes = []
        await self.pipe.reset()


class RedisBalanceStore(BalanceStore):
    """Balance store on redis.asyncio.

    The client owns a connection pool. Each transaction checks out one
    connection for the watch-read-commit sequence and returns it on exit.
    """

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisBalanceStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        async with _translate_errors():
            return await self.client.get(key)

    async def set(self, key: str, value: int) -> None:
        async with _translate_errors():
            await self.client.set(key, value)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[BalanceTransaction]:
        async with _translate_errors():
            async with self.client.pipeline(transaction=True) as pipe:
                yield RedisBalanceTransaction(pipe)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()


class InMemoryBalanceTransaction(BalanceTransaction):
    def __init__(self, store: "InMemoryBalanceStore"):
        self.store = store
        self.watched: Dict[str, int] = {}
        self.writes: List[Tuple[str, int]] = []

    async def watch(self, *keys: str) -> None:
        await asyncio.sleep(0)
        for key in keys:
            self.watched[key] = self.store.versions[key]

    async def get(self, key: str) -> Optional[str]:
        return await self.store.get(key)

    def queue_write(self, key: str, value: int) -> None:
        self.writes.append((key, value))

    async def commit(self) -> Optional[List]:
        await asyncio.sleep(0)
        # Check and apply without yielding, so no other writer can interleave
        try:
            for key, version in self.watched.items():
                if self.store.versions[key] != version:
                    return None
            results = []
            for key, value in self.writes:
                self.store.write(key, value)
                results.append(True)
            return results
        finally:
            self.watched = {}
            self.writes = []

    async def discard(self) -> None:
        self.watched = {}
        self.writes = []


class InMemoryBalanceStore(BalanceStore):
    """Process-local store with Redis-like watch semantics.

    Every write bumps a per-key version; a watch remembers the version it
    saw. Each call yields to the event loop once, like a network round trip.
    """

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.versions: Dict[str, int] = defaultdict(int)

    def write(self, key: str, value: int) -> None:
        self.values[key] = str(value)
        self.versions[key] += 1

    async def get(self, key: str) -> Optional[str]:
        await asyncio.sleep(0)
        return self.values.get(key)

    async def set(self, key: str, value: int) -> None:
        await asyncio.sleep(0)
        self.write(key, value)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[BalanceTransaction]:
        tx = InMemoryBalanceTransaction(self)
        try:
            yield tx
        finally:
            await tx.discard()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass
