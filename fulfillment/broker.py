"""
Driver availability broker for the Fulfillment service.

All cross-request dispatch state lives in Redis so that any number of service
instances share one source of truth:

    available   list  drivers waiting for work, oldest first
    busy        set   drivers holding an assigned or out-for-delivery order
    shift       set   every driver on duty, busy or not
    idle ready  list  ready orders nobody could take yet, oldest first

Each operation that reads and then writes this state is a single Lua script,
so it runs as one indivisible step on the Redis server.
"""
import os
import logging
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

AVAILABLE_DRIVERS_KEY = "available_drivers"
BUSY_DRIVERS_KEY = "busy_drivers"
SHIFT_DRIVERS_KEY = "shift_drivers"
IDLE_READY_ORDERS_KEY = "idle_ready_orders"
UPLOAD_KEY_PREFIX = "filehub:"


# KEYS: available, busy, shift   ARGV: driver id
JOIN_SHIFT_SCRIPT = """
redis.call("SADD", KEYS[3], ARGV[1])
if redis.call("SISMEMBER", KEYS[2], ARGV[1]) == 1 then
  return 0
end
if redis.call("LPOS", KEYS[1], ARGV[1]) then
  return 0
end
redis.call("RPUSH", KEYS[1], ARGV[1])
return 1
"""

# KEYS: available, busy, shift   ARGV: driver id
LEAVE_SHIFT_SCRIPT = """
if redis.call("SISMEMBER", KEYS[2], ARGV[1]) == 1 then
  return 0
end
redis.call("LREM", KEYS[1], 0, ARGV[1])
redis.call("SREM", KEYS[3], ARGV[1])
return 1
"""

# KEYS: available, busy
# A popped id that is already busy is a stale queue entry: drop it.
ASSIGN_DRIVER_SCRIPT = """
local driver_id = redis.call("LPOP", KEYS[1])
if not driver_id then
  return nil
end
if redis.call("SISMEMBER", KEYS[2], driver_id) == 1 then
  return nil
end
redis.call("SADD", KEYS[2], driver_id)
return driver_id
"""

# KEYS: available, busy, shift, idle ready orders   ARGV: driver id
CLAIM_IDLE_ORDER_SCRIPT = """
if redis.call("SISMEMBER", KEYS[3], ARGV[1]) == 0 then
  return nil
end
if redis.call("SISMEMBER", KEYS[2], ARGV[1]) == 1 then
  return nil
end
local order_id = redis.call("LPOP", KEYS[4])
if not order_id then
  return nil
end
redis.call("LREM", KEYS[1], 0, ARGV[1])
redis.call("SADD", KEYS[2], ARGV[1])
return order_id
"""

# KEYS: available, busy, idle ready orders
PAIR_IDLE_ORDER_SCRIPT = """
if redis.call("LLEN", KEYS[3]) == 0 then
  return nil
end
local driver_id = redis.call("LPOP", KEYS[1])
if not driver_id then
  return nil
end
if redis.call("SISMEMBER", KEYS[2], driver_id) == 1 then
  return nil
end
local order_id = redis.call("LPOP", KEYS[3])
redis.call("SADD", KEYS[2], driver_id)
return {driver_id, order_id}
"""

# KEYS: available, busy   ARGV: driver id
MARK_BUSY_SCRIPT = """
redis.call("LREM", KEYS[1], 0, ARGV[1])
redis.call("SADD", KEYS[2], ARGV[1])
return 1
"""

# KEYS: available, busy, shift   ARGV: driver id
RELEASE_DRIVER_SCRIPT = """
redis.call("SREM", KEYS[2], ARGV[1])
if redis.call("SISMEMBER", KEYS[3], ARGV[1]) == 0 then
  return 0
end
if redis.call("LPOS", KEYS[1], ARGV[1]) then
  return 0
end
redis.call("RPUSH", KEYS[1], ARGV[1])
return 1
"""

# KEYS: idle ready orders   ARGV: order id
PUSH_IDLE_ORDER_SCRIPT = """
if redis.call("LPOS", KEYS[1], ARGV[1]) then
  return 0
end
redis.call("RPUSH", KEYS[1], ARGV[1])
return 1
"""

# KEYS: counter   ARGV: ttl seconds
REGISTER_ATTEMPT_SCRIPT = """
local attempts = redis.call("INCR", KEYS[1])
if attempts == 1 then
  redis.call("EXPIRE", KEYS[1], ARGV[1])
end
return attempts
"""


class DispatchBroker(ABC):
    """Atomic operations over the shared driver/order dispatch state."""

    @abstractmethod
    async def join_shift(self, driver_id: str) -> bool:
        """Put a driver on shift and queue it as available unless queued or busy."""

    @abstractmethod
    async def leave_shift(self, driver_id: str) -> bool:
        """Take a driver off shift. Returns False, changing nothing, if it is busy."""

    @abstractmethod
    async def pop_available_driver(self) -> Optional[str]:
        """Pop the oldest available driver and mark it busy."""

    @abstractmethod
    async def claim_idle_order(self, driver_id: str) -> Optional[str]:
        """Hand the oldest idle ready order to an on-shift, non-busy driver and mark it busy."""

    @abstractmethod
    async def pair_idle_order(self) -> Optional[Tuple[str, str]]:
        """Pop the oldest available driver and the oldest idle order together."""

    @abstractmethod
    async def mark_busy(self, driver_id: str) -> None:
        """Move a driver from available to busy."""

    @abstractmethod
    async def release_driver(self, driver_id: str) -> bool:
        """Remove a driver from busy and queue it again if it is still on shift."""

    @abstractmethod
    async def push_idle_order(self, order_id: str) -> None:
        """Queue a ready order that no driver could take."""

    @abstractmethod
    async def discard_idle_order(self, order_id: str) -> None:
        """Remove an order from the idle queue."""

    @abstractmethod
    async def is_on_shift(self, driver_id: str) -> bool:
        ...

    @abstractmethod
    async def is_busy(self, driver_id: str) -> bool:
        ...

    @abstractmethod
    async def register_attempt(self, key: str, ttl: int) -> int:
        """Count an attempt; the counter expires ``ttl`` seconds after the first one."""

    @abstractmethod
    async def index_upload(self, filename: str, target_id: str, ttl: int) -> None:
        """Remember which row an upload belongs to until the upload lands."""

    @abstractmethod
    async def resolve_upload(self, filename: str) -> Optional[str]:
        ...


class RedisDispatchBroker(DispatchBroker):
    """DispatchBroker backed by Redis lists, sets and Lua scripts."""

    def __init__(self, client: redis.Redis):
        self.redis = client
        self._join_shift = client.register_script(JOIN_SHIFT_SCRIPT)
        self._leave_shift = client.register_script(LEAVE_SHIFT_SCRIPT)
        self._assign_driver = client.register_script(ASSIGN_DRIVER_SCRIPT)
        self._claim_idle_order = client.register_script(CLAIM_IDLE_ORDER_SCRIPT)
        self._pair_idle_order = client.register_script(PAIR_IDLE_ORDER_SCRIPT)
        self._mark_busy = client.register_script(MARK_BUSY_SCRIPT)
        self._release_driver = client.register_script(RELEASE_DRIVER_SCRIPT)
        self._push_idle_order = client.register_script(PUSH_IDLE_ORDER_SCRIPT)
        self._register_attempt = client.register_script(REGISTER_ATTEMPT_SCRIPT)

    @classmethod
    def from_url(cls, url: str = REDIS_URL) -> "RedisDispatchBroker":
        return cls(redis.from_url(url, decode_responses=True))

    async def join_shift(self, driver_id: str) -> bool:
        queued = await self._join_shift(
            keys=[AVAILABLE_DRIVERS_KEY, BUSY_DRIVERS_KEY, SHIFT_DRIVERS_KEY], args=[driver_id]
        )
        return bool(queued)

    async def leave_shift(self, driver_id: str) -> bool:
        left = await self._leave_shift(
            keys=[AVAILABLE_DRIVERS_KEY, BUSY_DRIVERS_KEY, SHIFT_DRIVERS_KEY], args=[driver_id]
        )
        return bool(left)

    async def pop_available_driver(self) -> Optional[str]:
        return await self._assign_driver(keys=[AVAILABLE_DRIVERS_KEY, BUSY_DRIVERS_KEY])

    async def claim_idle_order(self, driver_id: str) -> Optional[str]:
        return await self._claim_idle_order(
            keys=[AVAILABLE_DRIVERS_KEY, BUSY_DRIVERS_KEY, SHIFT_DRIVERS_KEY, IDLE_READY_ORDERS_KEY],
            args=[driver_id],
        )

    async def pair_idle_order(self) -> Optional[Tuple[str, str]]:
        result = await self._pair_idle_order(
            keys=[AVAILABLE_DRIVERS_KEY, BUSY_DRIVERS_KEY, IDLE_READY_ORDERS_KEY]
        )
        if not result:
            return None
        driver_id, order_id = result
        return driver_id, order_id

    async def mark_busy(self, driver_id: str) -> None:
        await self._mark_busy(keys=[AVAILABLE_DRIVERS_KEY, BUSY_DRIVERS_KEY], args=[driver_id])

    async def release_driver(self, driver_id: str) -> bool:
        requeued = await self._release_driver(
            keys=[AVAILABLE_DRIVERS_KEY, BUSY_DRIVERS_KEY, SHIFT_DRIVERS_KEY], args=[driver_id]
        )
        return bool(requeued)

    async def push_idle_order(self, order_id: str) -> None:
        await self._push_idle_order(keys=[IDLE_READY_ORDERS_KEY], args=[order_id])

    async def discard_idle_order(self, order_id: str) -> None:
        await self.redis.lrem(IDLE_READY_ORDERS_KEY, 0, order_id)

    async def is_on_shift(self, driver_id: str) -> bool:
        return bool(await self.redis.sismember(SHIFT_DRIVERS_KEY, driver_id))

    async def is_busy(self, driver_id: str) -> bool:
        return bool(await self.redis.sismember(BUSY_DRIVERS_KEY, driver_id))

    async def register_attempt(self, key: str, ttl: int) -> int:
        return int(await self._register_attempt(keys=[key], args=[ttl]))

    async def index_upload(self, filename: str, target_id: str, ttl: int) -> None:
        await self.redis.set(f"{UPLOAD_KEY_PREFIX}{filename}", target_id, ex=ttl)

    async def resolve_upload(self, filename: str) -> Optional[str]:
        return await self.redis.get(f"{UPLOAD_KEY_PREFIX}{filename}")
