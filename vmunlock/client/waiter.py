"""
Timelock Waiter.

Sleeps in bounded steps until `initiated_at + lock_duration`. No wait state
is kept between runs: the deadline is always recomputed from the on-chain
record, so killing the process mid-wait is harmless.
"""
from datetime import datetime, timezone
from typing import Callable, Optional
import logging
import time
from ..protocol.types.common import RpcTransientError

logger = logging.getLogger(__name__)


def format_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86_400)
    hours, rem = divmod(rem, 3_600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m {secs}s"


class TimelockWaiter:
    def __init__(self, clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep,
                 poll_interval: float = 60.0):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = poll_interval

    def remaining(self, initiated_at: int, lock_duration: int) -> float:
        return max(0.0, (initiated_at + lock_duration) - self.clock())

    def is_eligible(self, initiated_at: int, lock_duration: int) -> bool:
        return self.clock() >= initiated_at + lock_duration

    def wait_until_eligible(self, initiated_at: int, lock_duration: int,
                            should_stop: Optional[Callable[[], bool]] = None) -> bool:
        """
        Blocks until the deadline passes. Returns True once eligible, or False
        if `should_stop` asked to end the wait early (e.g. the account was
        finalized by someone else).

        Transient RPC failures from the clock or `should_stop` do not end the
        wait; the next poll tries again.
        """
        deadline = initiated_at + lock_duration
        first = True
        while True:
            try:
                now = self.clock()
            except RpcTransientError as e:
                logger.warning(f"Clock unavailable ({e}); retrying in {format_duration(self.poll_interval)}")
                self.sleep(self.poll_interval)
                continue

            if now >= deadline:
                logger.info("Timelock duration has passed")
                return True

            if first:
                logger.info(f"Unlock at: {deadline} ({format_timestamp(deadline)})")
            log = logger.info if first else logger.debug
            first = False
            log(f"Waiting for timelock... current time {format_timestamp(int(now))}, "
                f"{format_duration(deadline - now)} remaining")

            self.sleep(min(self.poll_interval, deadline - now))

            if should_stop is not None and self._check_stop(should_stop):
                logger.info("Wait cancelled by state re-check")
                return False

    def _check_stop(self, should_stop: Callable[[], bool]) -> bool:
        try:
            return should_stop()
        except RpcTransientError as e:
            logger.warning(f"State re-check failed ({e}); still waiting")
            return False
