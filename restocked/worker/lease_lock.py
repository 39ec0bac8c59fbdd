"""Leased, named locks that keep periodic jobs from overlapping across processes."""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restocked.config import settings
from restocked.db.models import SchedulerLock

logger = logging.getLogger(__name__)

# Lock names for the periodic jobs
CHECK_SCHEDULER_LOCK = "check-scheduler"
EMAIL_DELIVERY_LOCK = "email-delivery"


class LeaseLockManager:
    """
    Interface shared by the lock backends.

    - acquire() never blocks: it returns a token, or None when the lock is held
    - a lock held past its lease is abandoned and may be taken by anyone
    - release() and renew() only act when the caller's token still matches
    """

    async def acquire(
        self, name: str, lease_seconds: int, holder: Optional[str] = None
    ) -> Optional[str]:
        raise NotImplementedError

    async def release(self, name: str, token: str) -> bool:
        raise NotImplementedError

    async def renew(self, name: str, token: str, lease_seconds: int) -> bool:
        raise NotImplementedError

    async def get_lock_info(self, name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def force_release(self, name: str) -> bool:
        raise NotImplementedError

    async def close(self):
        pass


class SqlLeaseLockManager(LeaseLockManager):
    """
    Lease locks stored as rows in ``scheduler_locks``.

    Acquire takes over an expired row with a conditional UPDATE, otherwise
    INSERTs a new one; a primary-key collision means somebody else holds it.
    Both statements are atomic on their own, so two processes racing for
    the same name cannot both win.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from restocked.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    async def acquire(
        self, name: str, lease_seconds: int, holder: Optional[str] = None
    ) -> Optional[str]:
        """
        Acquire lock ``name`` for ``lease_seconds``.

        Args:
            name: Lock name (e.g. "check-scheduler")
            lease_seconds: Lease duration; the lock is abandoned afterwards
            holder: Free-form owner label, usually the run id

        Returns:
            Token string if acquired, None if already held
        """
        token = uuid4().hex
        holder = holder or token
        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=lease_seconds)

        async with self.session_factory() as db:
            result = await db.execute(
                update(SchedulerLock)
                .where(SchedulerLock.name == name, SchedulerLock.expires_at <= now)
                .values(holder=holder, token=token, acquired_at=now, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await db.commit()
                logger.warning(f"Took over expired lock '{name}' (holder: {holder[:16]})")
                return token

            db.add(
                SchedulerLock(
                    name=name,
                    holder=holder,
                    token=token,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.debug(f"Lock '{name}' already held")
                return None

        logger.info(f"Acquired lock '{name}' (holder: {holder[:16]}, lease: {lease_seconds}s)")
        return token

    async def release(self, name: str, token: str) -> bool:
        """
        Release lock ``name`` if ``token`` still owns it.

        Returns:
            True if released or already gone, False if owned by someone else
        """
        async with self.session_factory() as db:
            result = await db.execute(
                delete(SchedulerLock)
                .where(SchedulerLock.name == name, SchedulerLock.token == token)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1:
                logger.info(f"Released lock '{name}'")
                return True

            existing = await db.get(SchedulerLock, name)
            if existing is None:
                logger.debug(f"Lock '{name}' already released")
                return True

        logger.warning(f"Refused to release lock '{name}': token mismatch (lease lost?)")
        return False

    async def renew(self, name: str, token: str, lease_seconds: int) -> bool:
        """Extend the lease; fails if the lease expired or the token does not match."""
        now = datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(SchedulerLock)
                .where(
                    SchedulerLock.name == name,
                    SchedulerLock.token == token,
                    SchedulerLock.expires_at > now,
                )
                .values(expires_at=now + timedelta(seconds=lease_seconds))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount == 1:
            logger.debug(f"Renewed lock '{name}' for {lease_seconds}s")
            return True
        logger.warning(f"Could not renew lock '{name}' (expired or token mismatch)")
        return False

    async def get_lock_info(self, name: str) -> Optional[Dict[str, Any]]:
        """Return holder, timestamps and remaining lease, or None if no row exists."""
        async with self.session_factory() as db:
            result = await db.execute(select(SchedulerLock).where(SchedulerLock.name == name))
            lock = result.scalar_one_or_none()

        if lock is None:
            return None

        remaining = (lock.expires_at - datetime.utcnow()).total_seconds()
        return {
            "name": lock.name,
            "holder": lock.holder,
            "token": lock.token,
            "acquired_at": lock.acquired_at.isoformat(),
            "expires_at": lock.expires_at.isoformat(),
            "ttl_seconds": int(remaining) if remaining > 0 else None,
            "expired": remaining <= 0,
        }

    async def force_release(self, name: str) -> bool:
        """Drop the lock without token verification (operator recovery)."""
        async with self.session_factory() as db:
            await db.execute(
                delete(SchedulerLock)
                .where(SchedulerLock.name == name)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.warning(f"Force-released lock '{name}'")
        return True


class RedisLeaseLockManager(LeaseLockManager):
    """Lease locks in Redis (SET NX EX plus compare-and-delete scripts)."""

    KEY_PREFIX = "restocked:lock:"

    _RELEASE_SCRIPT = """
    local lock_value = redis.call('GET', KEYS[1])
    if not lock_value then
        return 0
    end

    local cjson = require('cjson')
    local success, data = pcall(cjson.decode, lock_value)
    if not success then
        return 2
    end

    if data.token == ARGV[1] then
        redis.call('DEL', KEYS[1])
        return 1
    else
        return 2
    end
    """

    _RENEW_SCRIPT = """
    local lock_value = redis.call('GET', KEYS[1])
    if not lock_value then
        return 0
    end

    local cjson = require('cjson')
    local success, data = pcall(cjson.decode, lock_value)
    if not success then
        return 0
    end

    if data.token == ARGV[1] then
        redis.call('EXPIRE', KEYS[1], ARGV[2])
        return 1
    else
        return 2
    end
    """

    def __init__(self, redis_url: Optional[str] = None):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
        """
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    def _key(self, name: str) -> str:
        return f"{self.KEY_PREFIX}{name}"

    async def acquire(
        self, name: str, lease_seconds: int, holder: Optional[str] = None
    ) -> Optional[str]:
        redis_client = await self._get_redis()

        token = uuid4().hex
        holder = holder or token
        lock_value = json.dumps({
            "holder": holder,
            "token": token,
            "acquired_at": datetime.utcnow().isoformat(),
        })

        acquired = await redis_client.set(
            self._key(name),
            lock_value,
            nx=True,
            ex=lease_seconds,
        )
        if acquired:
            logger.info(f"Acquired lock '{name}' (holder: {holder[:16]}, lease: {lease_seconds}s)")
            return token

        logger.debug(f"Lock '{name}' already held")
        return None

    async def release(self, name: str, token: str) -> bool:
        redis_client = await self._get_redis()
        result = await redis_client.eval(self._RELEASE_SCRIPT, 1, self._key(name), token)

        if result == 0:
            logger.debug(f"Lock '{name}' already released")
            return True
        if result == 1:
            logger.info(f"Released lock '{name}'")
            return True
        logger.warning(f"Refused to release lock '{name}': token mismatch (lease lost?)")
        return False

    async def renew(self, name: str, token: str, lease_seconds: int) -> bool:
        redis_client = await self._get_redis()
        result = await redis_client.eval(
            self._RENEW_SCRIPT, 1, self._key(name), token, str(lease_seconds)
        )
        if result == 1:
            logger.debug(f"Renewed lock '{name}' for {lease_seconds}s")
            return True
        logger.warning(f"Could not renew lock '{name}' (expired or token mismatch)")
        return False

    async def get_lock_info(self, name: str) -> Optional[Dict[str, Any]]:
        redis_client = await self._get_redis()
        value = await redis_client.get(self._key(name))
        ttl = await redis_client.ttl(self._key(name))

        if not value:
            return None

        try:
            data = json.loads(value)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid lock value format for '{name}': {e}")
            return {"name": name, "raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}

        return {
            "name": name,
            "holder": data.get("holder"),
            "token": data.get("token"),
            "acquired_at": data.get("acquired_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
            "expired": False,
        }

    async def force_release(self, name: str) -> bool:
        redis_client = await self._get_redis()
        await redis_client.delete(self._key(name))
        logger.warning(f"Force-released lock '{name}'")
        return True


async def refresh_lock_heartbeat(
    manager: LeaseLockManager,
    name: str,
    token: str,
    interval: int = 60,
    lease_seconds: int = 900,
) -> None:
    """
    Background task renewing a lease while its job runs.

    Stops after three consecutive renewal failures; the job itself keeps
    running and finds out at release time that the lease was lost.
    """
    failure_count = 0

    try:
        while True:
            await asyncio.sleep(interval)

            try:
                renewed = await manager.renew(name, token, lease_seconds)
            except Exception as e:
                logger.error(f"Heartbeat error for lock '{name}': {e}")
                renewed = False

            if renewed:
                failure_count = 0
                continue

            failure_count += 1
            logger.warning(
                f"Heartbeat failed for lock '{name}' (consecutive failures: {failure_count})"
            )
            if failure_count >= 3:
                logger.error(f"Heartbeat stopping after {failure_count} failures for lock '{name}'")
                break
    except asyncio.CancelledError:
        logger.debug(f"Heartbeat cancelled for lock '{name}'")
        raise


def build_lock_manager(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> LeaseLockManager:
    """Create the lock backend selected by ``settings.lock_backend``."""
    if settings.lock_backend == "redis":
        return RedisLeaseLockManager(settings.redis_url)
    return SqlLeaseLockManager(session_factory)
