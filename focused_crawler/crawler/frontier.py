"""
Persistent frontier of discovered links.

Links live in Redis: one hash per fingerprint holds the record. Ready links
are indexed per host in sorted sets keyed by relevance score, and a host index
scores every host by its best ready link, so a batch walks hosts in priority
order and passes over a throttled host in one step however many links it
holds. A second sorted set keyed by time holds links waiting out a retry
backoff. Host politeness state is kept next to the links so that a restart
recovers it together with the frontier.

Every state transition runs as a MULTI/EXEC transaction and is awaited before
the call returns, so an acknowledged transition survives a crash.
"""

import asyncio
import functools
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .models import HostSchedule, InsertResult, Link, LinkState, MAX_SCORE, clamp_score
from .urls import InvalidURLError, canonicalize_url, host_of, url_fingerprint
from ..utils.config import FrontierConfig


ACTIVE_STATES = (LinkState.SCHEDULED, LinkState.FETCHING)


class FrontierPersistenceError(Exception):
    """The durable frontier could not be read or written."""
    pass


def _persistent(func):
    """Surface Redis failures as FrontierPersistenceError."""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisError as e:
            self.logger.error(f"Frontier persistence failure in {func.__name__}: {e}")
            raise FrontierPersistenceError(f"{func.__name__} failed: {e}") from e
    return wrapper


class KeyedLock:
    """asyncio locks created on demand per key and dropped once idle."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def acquire(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class FrontierStore:
    """
    Durable, deduplicated, score-ordered set of links with per-host scheduling.

    The store is the only component that mutates Link and HostSchedule state;
    everything else goes through the operations below.
    """

    def __init__(self, redis_client: redis.Redis, config: Optional[FrontierConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self.config = config or FrontierConfig()
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        prefix = self.config.key_prefix
        self.link_prefix = f"{prefix}:link:"
        self.host_prefix = f"{prefix}:host:"
        self.ready_key = f"{prefix}:ready"
        self.ready_host_prefix = f"{prefix}:ready:"
        self.ready_hosts_key = f"{prefix}:ready_hosts"
        self.delayed_key = f"{prefix}:delayed"
        self.inflight_key = f"{prefix}:inflight"
        self.hosts_key = f"{prefix}:hosts"
        self.stats_key = f"{prefix}:stats"

        self._batch_lock = asyncio.Lock()
        self._fingerprint_locks = KeyedLock()
        self._host_locks = KeyedLock()

    def _link_key(self, fingerprint: str) -> str:
        return f"{self.link_prefix}{fingerprint}"

    def _host_key(self, host: str) -> str:
        return f"{self.host_prefix}{host}"

    def _ready_host_key(self, host: str) -> str:
        return f"{self.ready_host_prefix}{host}"

    def _queue_ready(self, pipe, link: Link, score: Optional[float] = None, **flags):
        """Queue commands that make a link ready at the given score."""
        score = link.score if score is None else score
        pipe.zadd(self.ready_key, {link.fingerprint: score}, **flags)
        pipe.zadd(self._ready_host_key(link.host), {link.fingerprint: score}, **flags)
        # gt: the host index only ever overestimates a host's best ready score
        pipe.zadd(self.ready_hosts_key, {link.host: score}, gt=True)

    def _queue_unready(self, pipe, link: Link):
        pipe.zrem(self.ready_key, link.fingerprint)
        pipe.zrem(self._ready_host_key(link.host), link.fingerprint)

    @_persistent
    async def initialize(self):
        """
        Verify the connection and recover from an unclean shutdown.

        Links a previous process left SCHEDULED or FETCHING were never
        acknowledged as finished, so they go back to DISCOVERED. Host
        in-flight counters restart from zero since nothing is in flight yet.
        """
        await self.redis.ping()

        inflight = await self.redis.smembers(self.inflight_key)
        recovered = 0
        async with self.redis.pipeline(transaction=True) as pipe:
            for fingerprint in inflight:
                link = await self._load(fingerprint)
                if link is None or link.state not in ACTIVE_STATES:
                    continue
                pipe.hset(self._link_key(fingerprint), 'state', LinkState.DISCOVERED.value)
                self._queue_ready(pipe, link)
                recovered += 1
            pipe.delete(self.inflight_key)
            for host in await self.redis.smembers(self.hosts_key):
                pipe.hset(self._host_key(host), 'in_flight', 0)
            await pipe.execute()

        stats = await self.get_stats()
        self.logger.info(f"Initialized frontier: {stats['ready']} ready, "
                         f"{stats['delayed']} delayed, {stats['done']} done, "
                         f"{stats['failed']} failed")
        if recovered:
            self.logger.warning(f"Recovered {recovered} links left in flight by a previous run")

    async def _load(self, fingerprint: str) -> Optional[Link]:
        data = await self.redis.hgetall(self._link_key(fingerprint))
        return Link.from_redis(data) if data else None

    @_persistent
    async def get_link(self, fingerprint: str) -> Optional[Link]:
        """Point lookup by fingerprint."""
        return await self._load(fingerprint)

    @_persistent
    async def get_host(self, host: str) -> HostSchedule:
        data = await self.redis.hgetall(self._host_key(host))
        return HostSchedule.from_redis(host, data)

    @_persistent
    async def insert(self, url: str, score: float, depth: int) -> InsertResult:
        """
        Add a link or merge a re-discovery into the existing entry.

        Re-discovery keeps the highest score and the lowest depth. Links
        that are already DONE or permanently FAILED are rejected, as are
        URLs that cannot be canonicalized.
        """
        try:
            canonical = canonicalize_url(url)
        except InvalidURLError as e:
            self.logger.debug(f"Rejected URL: {e}")
            return InsertResult.REJECTED

        fingerprint = url_fingerprint(canonical)
        score = clamp_score(score)

        async with self._fingerprint_locks.acquire(fingerprint):
            existing = await self._load(fingerprint)

            if existing is None:
                link = Link(
                    url=canonical,
                    fingerprint=fingerprint,
                    host=host_of(canonical),
                    score=score,
                    depth=depth,
                    discovered_at=self.clock(),
                )
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.hset(self._link_key(fingerprint), mapping=link.to_redis())
                    self._queue_ready(pipe, link, nx=True)
                    pipe.sadd(self.hosts_key, link.host)
                    await pipe.execute()
                self.logger.debug(f"Inserted {canonical} (score={score:.3f}, depth={depth})")
                return InsertResult.INSERTED

            if existing.state in (LinkState.DONE, LinkState.FAILED):
                return InsertResult.REJECTED

            new_score = max(existing.score, score)
            new_depth = min(existing.depth, depth)
            if new_score == existing.score and new_depth == existing.depth:
                return InsertResult.REJECTED

            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._link_key(fingerprint), mapping={
                    'score': repr(new_score),
                    'depth': str(new_depth),
                })
                if new_score != existing.score and existing.state == LinkState.DISCOVERED:
                    # xx: never re-add a link that was claimed or delayed meanwhile
                    self._queue_ready(pipe, existing, new_score, xx=True)
                await pipe.execute()
            return InsertResult.UPDATED

    async def insert_many(self, urls: Iterable[str], score: float = MAX_SCORE,
                          depth: int = 0) -> Dict[InsertResult, int]:
        """Insert several URLs with the same score; used for seeds."""
        counts = {result: 0 for result in InsertResult}
        for url in urls:
            counts[await self.insert(url, score, depth)] += 1
        return counts

    async def _promote_delayed(self, now: float):
        due = await self.redis.zrangebyscore(self.delayed_key, '-inf', now)
        if not due:
            return

        async with self.redis.pipeline(transaction=True) as pipe:
            for fingerprint in due:
                link = await self._load(fingerprint)
                pipe.zrem(self.delayed_key, fingerprint)
                if link is not None and link.state == LinkState.DISCOVERED:
                    self._queue_ready(pipe, link)
            await pipe.execute()
        self.logger.debug(f"Promoted {len(due)} links out of retry backoff")

    @_persistent
    async def next_batch(self, max_size: int) -> List[Link]:
        """
        Claim up to max_size DISCOVERED links in descending score order.

        Hosts are visited in order of their best ready link. A host inside
        its politeness window or already at its concurrency cap is passed
        over as a whole, so it never holds back links of other hosts.
        Returned links are SCHEDULED and count against their host's
        in-flight slots.
        """
        if max_size <= 0:
            return []

        async with self._batch_lock:
            now = self.clock()
            await self._promote_delayed(now)

            candidates, empty_hosts = await self._collect_candidates(max_size, now)
            async with self.redis.pipeline(transaction=False) as pipe:
                for _, fingerprint, _ in candidates:
                    pipe.hgetall(self._link_key(fingerprint))
                records = await pipe.execute()

            selected: List[Link] = []
            stray: List[Tuple[str, str]] = []
            planned: Dict[str, int] = defaultdict(int)
            for (_, fingerprint, host), data in zip(candidates, records):
                link = Link.from_redis(data) if data else None
                if link is None or link.state != LinkState.DISCOVERED:
                    stray.append((fingerprint, host))
                    continue
                planned[link.host] += 1
                selected.append(link)

            if selected or stray:
                async with self.redis.pipeline(transaction=True) as pipe:
                    for fingerprint, host in stray:
                        pipe.zrem(self.ready_key, fingerprint)
                        pipe.zrem(self._ready_host_key(host), fingerprint)
                    for link in selected:
                        link.state = LinkState.SCHEDULED
                        self._queue_unready(pipe, link)
                        pipe.hset(self._link_key(link.fingerprint), 'state', LinkState.SCHEDULED.value)
                        pipe.sadd(self.inflight_key, link.fingerprint)
                    for host, count in planned.items():
                        pipe.hincrby(self._host_key(host), 'in_flight', count)
                    await pipe.execute()

            for host in {host for _, _, host in candidates} | empty_hosts:
                await self._refresh_host_index(host)

        if selected:
            self.logger.debug(f"Scheduled batch of {len(selected)} links across {len(planned)} hosts")
        return selected

    async def _collect_candidates(self, max_size: int,
                                  now: float) -> Tuple[List[Tuple[float, str, str]], Set[str]]:
        """
        Best (score, fingerprint, host) entries across hosts that can take work,
        plus the indexed hosts found without ready links.

        The walk stops once max_size candidates score at least as high as
        the next host's best ready link.
        """
        candidates: List[Tuple[float, str, str]] = []
        empty_hosts: Set[str] = set()
        page_size = self.config.scan_page_size
        offset = 0

        while True:
            page = await self.redis.zrevrange(self.ready_hosts_key, offset,
                                              offset + page_size - 1, withscores=True)
            if not page:
                return candidates, empty_hosts
            offset += len(page)

            async with self.redis.pipeline(transaction=False) as pipe:
                for host, _ in page:
                    pipe.hgetall(self._host_key(host))
                host_records = await pipe.execute()

            for (host, best_score), data in zip(page, host_records):
                if len(candidates) >= max_size and candidates[-1][0] >= best_score:
                    return candidates, empty_hosts

                schedule = HostSchedule.from_redis(host, data)
                if schedule.next_allowed_fetch_time > now:
                    continue
                slots = self.config.per_host_concurrency - schedule.in_flight_count
                if slots <= 0:
                    continue

                top = await self.redis.zrevrange(self._ready_host_key(host), 0,
                                                 min(slots, max_size) - 1, withscores=True)
                if not top:
                    empty_hosts.add(host)
                    continue
                candidates.extend((score, fingerprint, host) for fingerprint, score in top)
                candidates.sort(key=lambda candidate: candidate[0], reverse=True)
                del candidates[max_size:]

    async def _refresh_host_index(self, host: str):
        """Rescore a host in the host index by its current best ready link."""
        ready_key = self._ready_host_key(host)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(ready_key)
                    top = await pipe.zrevrange(ready_key, 0, 0, withscores=True)
                    pipe.multi()
                    if top:
                        pipe.zadd(self.ready_hosts_key, {host: top[0][1]})
                    else:
                        pipe.zrem(self.ready_hosts_key, host)
                    await pipe.execute()
                    return
                except WatchError:
                    # an insert touched the host meanwhile
                    continue

    @_persistent
    async def mark_fetching(self, fingerprint: str) -> bool:
        async with self._fingerprint_locks.acquire(fingerprint):
            link = await self._load(fingerprint)
            if link is None or link.state != LinkState.SCHEDULED:
                self._log_stale('mark_fetching', fingerprint, link)
                return False
            await self.redis.hset(self._link_key(fingerprint), mapping={
                'state': LinkState.FETCHING.value,
                'last_attempt_at': repr(self.clock()),
            })
            return True

    @_persistent
    async def mark_done(self, fingerprint: str, outcome: str = "fetched") -> bool:
        async with self._fingerprint_locks.acquire(fingerprint):
            link = await self._load(fingerprint)
            if link is None or link.state not in ACTIVE_STATES:
                self._log_stale('mark_done', fingerprint, link)
                return False

            async with self._host_locks.acquire(link.host):
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.hset(self._link_key(fingerprint), mapping={
                        'state': LinkState.DONE.value,
                        'outcome': outcome,
                    })
                    pipe.hincrby(self.stats_key, 'done', 1)
                    self._queue_host_release(pipe, link, politeness=True)
                    await pipe.execute()
            return True

    @_persistent
    async def mark_failed(self, fingerprint: str, retryable: bool) -> Optional[LinkState]:
        """
        Record a failed attempt.

        Retryable failures under the retry budget go back to DISCOVERED
        behind an exponential backoff; anything else is FAILED for good.
        Returns the new state, or None when the link was not in flight.
        """
        async with self._fingerprint_locks.acquire(fingerprint):
            link = await self._load(fingerprint)
            if link is None or link.state not in ACTIVE_STATES:
                self._log_stale('mark_failed', fingerprint, link)
                return None

            now = self.clock()
            attempts = link.attempts + 1
            async with self._host_locks.acquire(link.host):
                async with self.redis.pipeline(transaction=True) as pipe:
                    if retryable and attempts < self.config.max_retries:
                        delay = self._backoff(attempts)
                        new_state = LinkState.DISCOVERED
                        pipe.hset(self._link_key(fingerprint), mapping={
                            'state': new_state.value,
                            'attempts': str(attempts),
                            'eligible_at': repr(now + delay),
                        })
                        pipe.zadd(self.delayed_key, {fingerprint: now + delay})
                    else:
                        new_state = LinkState.FAILED
                        pipe.hset(self._link_key(fingerprint), mapping={
                            'state': new_state.value,
                            'attempts': str(attempts),
                        })
                        pipe.hincrby(self.stats_key, 'failed', 1)
                    self._queue_host_release(pipe, link, politeness=True)
                    await pipe.execute()

        if new_state == LinkState.FAILED:
            self.logger.info(f"Link failed permanently after {attempts} attempts: {link.url}")
        else:
            self.logger.debug(f"Retrying {link.url} ({attempts}/{self.config.max_retries})")
        return new_state

    @_persistent
    async def release(self, fingerprint: str, delay: float = 0.0) -> bool:
        """Return a claimed link to DISCOVERED without counting an attempt."""
        async with self._fingerprint_locks.acquire(fingerprint):
            link = await self._load(fingerprint)
            if link is None or link.state not in ACTIVE_STATES:
                self._log_stale('release', fingerprint, link)
                return False

            eligible_at = self.clock() + delay
            async with self._host_locks.acquire(link.host):
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.hset(self._link_key(fingerprint), mapping={
                        'state': LinkState.DISCOVERED.value,
                        'eligible_at': repr(eligible_at),
                    })
                    if delay > 0:
                        pipe.zadd(self.delayed_key, {fingerprint: eligible_at})
                    else:
                        self._queue_ready(pipe, link)
                    self._queue_host_release(pipe, link, politeness=False)
                    await pipe.execute()
            return True

    def _queue_host_release(self, pipe, link: Link, politeness: bool):
        pipe.srem(self.inflight_key, link.fingerprint)
        pipe.hincrby(self._host_key(link.host), 'in_flight', -1)
        if politeness:
            pipe.hset(self._host_key(link.host), 'next_allowed',
                      repr(self.clock() + self.config.politeness_delay))

    def _backoff(self, attempts: int) -> float:
        return min(self.config.backoff_base * 2 ** (attempts - 1), self.config.backoff_max)

    def _log_stale(self, operation: str, fingerprint: str, link: Optional[Link]):
        state = link.state.value if link else 'missing'
        self.logger.debug(f"Ignored {operation} for {fingerprint[:12]} in state {state}")

    @_persistent
    async def pending_count(self) -> Tuple[int, int]:
        """Number of (ready, delayed) links."""
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self.ready_key)
            pipe.zcard(self.delayed_key)
            ready, delayed = await pipe.execute()
        return ready, delayed

    async def has_pending(self) -> bool:
        """True while any DISCOVERED link remains, ready or in backoff."""
        ready, delayed = await self.pending_count()
        return ready + delayed > 0

    @_persistent
    async def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self.ready_key)
            pipe.zcard(self.delayed_key)
            pipe.scard(self.inflight_key)
            pipe.scard(self.hosts_key)
            pipe.hgetall(self.stats_key)
            ready, delayed, in_flight, hosts, counters = await pipe.execute()
        return {
            'ready': ready,
            'delayed': delayed,
            'in_flight': in_flight,
            'hosts': hosts,
            'done': int(counters.get('done', 0)),
            'failed': int(counters.get('failed', 0)),
        }

    async def close(self):
        """Log the final frontier state. The Redis client is owned by the caller."""
        try:
            stats = await self.get_stats()
            self.logger.info(f"Frontier closed: {stats}")
        except FrontierPersistenceError:
            self.logger.warning("Could not read frontier stats on close")
