"""Async cycle runner: scan-and-enter loop plus a position monitor loop.

A failing cycle is logged and the next one is scheduled; the runner only
stops when stop() is called.
"""
import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from .binance_client import BinanceClient
from .config import ScheduleConfig
from .errors import PartialExecutionError, RateLimitedError
from .logging_setup import logger
from .trader import Trader


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CycleRunner:
    """Drive a Trader on timers until stopped."""

    def __init__(
        self,
        trader: Trader,
        schedule: Optional[ScheduleConfig] = None,
        *,
        max_backoff_seconds: float = 60.0,
        backoff: Callable[..., float] = BinanceClient._jittered_backoff,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.trader = trader
        self.schedule = schedule or ScheduleConfig()
        self.max_backoff_seconds = max_backoff_seconds
        self._backoff = backoff
        self._now = now
        self._stop_event = asyncio.Event()
        self._rate_limit_attempt = 0
        self.cycles = 0
        self.errors = 0

    async def start(self):
        """Run the scan and monitor loops until stop() is called."""
        logger.info(
            f"Runner started | scan_interval={self.schedule.scan_interval_seconds}s "
            f"monitor_interval={self.schedule.monitor_interval_seconds}s"
        )
        await asyncio.gather(self._scan_loop(), self._monitor_loop())
        logger.info(f"Runner stopped | cycles={self.cycles} errors={self.errors}")

    async def stop(self):
        """Signal both loops to stop."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    async def _wait(self, seconds: float) -> None:
        """Sleep, returning early once stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            pass

    async def run_scan_cycle(self) -> float:
        """One decide/enter pass; returns seconds until the next pass."""
        self.cycles += 1
        try:
            entered, symbol, note = await self.trader.try_enter()
        except RateLimitedError as e:
            self.errors += 1
            delay = e.retry_after or self._backoff(
                self._rate_limit_attempt, base=1.0, max_backoff=self.max_backoff_seconds
            )
            self._rate_limit_attempt += 1
            logger.warning(f"Scan cycle rate limited | retry_in={delay:.1f}s error={e}")
            return delay
        except Exception:
            self.errors += 1
            logger.exception("Scan cycle failed")
            return self.schedule.scan_interval_seconds

        self._rate_limit_attempt = 0
        logger.info(f"Scan cycle | entered={entered} symbol={symbol} note={note}")
        decision = self.trader.last_decision
        if not entered and decision is not None and decision.next_check is not None:
            return max(0.0, (decision.next_check - self._now()).total_seconds())
        return self.schedule.scan_interval_seconds

    async def run_monitor_cycle(self) -> None:
        try:
            note = await self.trader.check_position()
        except PartialExecutionError as e:
            self.errors += 1
            logger.critical(f"Position check left unmanaged exposure | symbol={e.symbol} error={e}")
            return
        except Exception:
            self.errors += 1
            logger.exception("Position check failed")
            return
        if note:
            logger.info(f"Position update | {note}")

    async def _scan_loop(self):
        while not self.stopped:
            delay = await self.run_scan_cycle()
            await self._wait(delay)

    async def _monitor_loop(self):
        while not self.stopped:
            await self.run_monitor_cycle()
            await self._wait(self.schedule.monitor_interval_seconds)
