import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError as RedisClientError

from core.logging import get_trading_logger_safe
from core.utils.exceptions import ConfigurationError, LockAcquisitionError, RedisError


class IssuerLockManager:
    """
    Serializes every mutating access to one issuer's supply counter.

    One asyncio.Lock per issuer covers writers in this process. With
    ``distributed=True`` a Redis lock is taken as well, so a separate process
    (an out-of-band auditor, a second API worker) waits on the same issuer.
    """

    def __init__(self, lock_timeout_seconds: float = 5.0, redis_client: Optional[redis.Redis] = None,
                 distributed: bool = False, lock_ttl_seconds: float = 30.0,
                 key_prefix: str = "settlement:issuer-lock"):
        if distributed and redis_client is None:
            raise ConfigurationError("Distributed issuer locks require a Redis client",
                                     config_field="settlement.distributed_locks_enabled", config_value=True)
        self.lock_timeout_seconds = lock_timeout_seconds
        self.redis_client = redis_client
        self.distributed = distributed
        self.lock_ttl_seconds = lock_ttl_seconds
        self.key_prefix = key_prefix
        self._issuer_locks: Dict[str, asyncio.Lock] = {}
        self._issuer_locks_lock = asyncio.Lock()
        self.logger = get_trading_logger_safe("lock_manager")

    def redis_key(self, issuer_id: str) -> str:
        return f"{self.key_prefix}:{issuer_id}"

    async def _get_issuer_lock(self, issuer_id: str) -> asyncio.Lock:
        async with self._issuer_locks_lock:
            if issuer_id not in self._issuer_locks:
                self._issuer_locks[issuer_id] = asyncio.Lock()
            return self._issuer_locks[issuer_id]

    def _timeout_error(self, issuer_id: str, where: str) -> LockAcquisitionError:
        return LockAcquisitionError(
            f"Timed out after {self.lock_timeout_seconds}s waiting for {where} lock on issuer {issuer_id}",
            issuer_id=issuer_id,
            timeout_seconds=self.lock_timeout_seconds,
        )

    @asynccontextmanager
    async def hold(self, issuer_id: str) -> AsyncIterator[None]:
        """Hold the issuer's write lock for the duration of the block.

        Raises LockAcquisitionError when the lock cannot be taken in time.
        """
        local_lock = await self._get_issuer_lock(issuer_id)
        try:
            await asyncio.wait_for(local_lock.acquire(), timeout=self.lock_timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.warning("Issuer lock wait timed out", issuer_id=issuer_id,
                                timeout_seconds=self.lock_timeout_seconds)
            raise self._timeout_error(issuer_id, "local")

        try:
            if not self.distributed:
                yield
                return

            remote_lock = self.redis_client.lock(
                self.redis_key(issuer_id),
                timeout=self.lock_ttl_seconds,
                blocking_timeout=self.lock_timeout_seconds,
            )
            try:
                acquired = await remote_lock.acquire()
            except RedisClientError as e:
                raise RedisError(f"Failed to acquire issuer lock: {e}", operation="lock_acquire",
                                 key=self.redis_key(issuer_id))
            if not acquired:
                self.logger.warning("Distributed issuer lock wait timed out", issuer_id=issuer_id,
                                    timeout_seconds=self.lock_timeout_seconds)
                raise self._timeout_error(issuer_id, "distributed")

            try:
                yield
            finally:
                try:
                    await remote_lock.release()
                except RedisClientError as e:
                    # TTL expired mid-section or Redis went away; the key expires on its own
                    self.logger.error("Failed to release distributed issuer lock",
                                      issuer_id=issuer_id, error=str(e))
        finally:
            local_lock.release()

    def is_locked(self, issuer_id: str) -> bool:
        """True if an in-process writer currently holds the issuer lock."""
        lock = self._issuer_locks.get(issuer_id)
        return lock is not None and lock.locked()
