"""
Trade Settlement - Sweep Scheduler.

============================================================
PURPOSE
============================================================
Runs each sweep on its own asyncio loop and cadence.

JOBS:
- hard_expiry      every 5 minutes
- policy_timeout   every minute
- dispute_expiry   every 2 hours (1 hour for fiat deposits)

A failing cycle is logged and alerted; the loop keeps going.

============================================================
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .alerting import AlertDispatcher, create_sweep_failure_alert
from .config import SweepScheduleConfig
from .errors import error_code_for
from .supervisors import Sweep, SweepResult


logger = logging.getLogger(__name__)


class SweepScheduler:
    """
    Periodic driver for the timeout sweeps.
    """

    def __init__(
        self,
        sweeps: List[Sweep],
        schedule: Optional[SweepScheduleConfig] = None,
        alerts: Optional[AlertDispatcher] = None,
    ):
        """
        Initialize scheduler.

        Args:
            sweeps: Sweeps to drive, unique by name
            schedule: Cadence per sweep
            alerts: Dispatcher for cycle failures
        """
        self._sweeps: Dict[str, Sweep] = {}
        for sweep in sweeps:
            if sweep.name in self._sweeps:
                raise ValueError(f"Duplicate sweep name: {sweep.name}")
            self._sweeps[sweep.name] = sweep

        self._schedule = schedule or SweepScheduleConfig()
        self._alerts = alerts
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._last_results: Dict[str, SweepResult] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def sweep_names(self) -> List[str]:
        return list(self._sweeps)

    def interval_for(self, name: str) -> float:
        intervals = {
            "hard_expiry": self._schedule.hard_expiry_interval_seconds,
            "policy_timeout": self._schedule.policy_timeout_interval_seconds,
            "dispute_expiry": self._schedule.dispute_expiry_interval_seconds,
        }
        if name not in intervals:
            raise KeyError(f"No cadence configured for sweep {name}")
        return intervals[name]

    def last_result(self, name: str) -> Optional[SweepResult]:
        return self._last_results.get(name)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start one loop per sweep."""
        if self._running:
            return

        logger.info("Starting sweep scheduler...")
        self._running = True
        for name in self._sweeps:
            self._tasks[name] = asyncio.create_task(self._sweep_loop(name), name=f"sweep:{name}")
        logger.info(f"Sweep scheduler started: {', '.join(self._sweeps)}")

    async def stop(self) -> None:
        """Cancel every loop and wait for it to finish."""
        if not self._running:
            return

        logger.info("Stopping sweep scheduler...")
        self._running = False

        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Sweep scheduler stopped")

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    async def run_once(self, name: str) -> SweepResult:
        """Run a single cycle of the named sweep."""
        sweep = self._sweeps.get(name)
        if sweep is None:
            raise KeyError(f"Unknown sweep: {name}")
        result = await sweep.run()
        self._last_results[name] = result
        return result

    async def run_all_once(self) -> Dict[str, SweepResult]:
        return {name: await self.run_once(name) for name in self._sweeps}

    async def _sweep_loop(self, name: str) -> None:
        """Background loop of one sweep."""
        interval = self.interval_for(name)

        while self._running:
            try:
                await asyncio.sleep(interval)

                if not self._running:
                    break

                await self.run_once(name)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sweep {name} cycle error: {e}", exc_info=True)
                if self._alerts is not None:
                    await self._alerts.dispatch(create_sweep_failure_alert(
                        name, str(e), error_code=error_code_for(e, "SWP_CYCLE_FAILED")
                    ))
