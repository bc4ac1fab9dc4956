"""
Scripts - Run Settlement.

============================================================
RESPONSIBILITY
============================================================
Runs the settlement sweep workers.

- Builds the store, bus, publisher and state machine service
- Drives hard_expiry, policy_timeout and dispute_expiry
- Re-publishes failed settlement events on request
- Handles graceful shutdown

============================================================
USAGE
============================================================
python -m scripts.run_settlement
python -m scripts.run_settlement --once hard_expiry
python -m scripts.run_settlement --republish --log-level DEBUG
python -m scripts.run_settlement --in-process-bus --once hard_expiry

============================================================
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import List, Optional

from core.clock import SystemClock, ClockProtocol
from trade_settlement.alerting import AlertDispatcher, TelegramAlerter
from trade_settlement.bus import InMemoryMessageBus, MessageBus, RestProxyMessageBus
from trade_settlement.config import SettlementConfig
from trade_settlement.database import SettlementDatabase
from trade_settlement.errors import ConfigurationError
from trade_settlement.publisher import EscrowEventPublisher
from trade_settlement.repository import SqlAlchemyTradeStore
from trade_settlement.scheduler import SweepScheduler
from trade_settlement.supervisors import (
    DisputeExpirySweep,
    HardExpirySweep,
    PolicyTimeoutSweep,
)
from trade_settlement.trade_service import TradeStateMachine


logger = logging.getLogger("scripts.run_settlement")


SWEEP_NAMES = ["hard_expiry", "policy_timeout", "dispute_expiry"]


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="run-settlement",
        description="Trade settlement sweep workers",
    )
    parser.add_argument(
        "--once",
        choices=SWEEP_NAMES,
        help="Run a single cycle of one sweep and exit",
    )
    parser.add_argument(
        "--republish",
        action="store_true",
        help="Re-publish failed settlement events and exit",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the settlement tables before starting",
    )
    parser.add_argument(
        "--fiat-deposit",
        action="store_true",
        help="Use the fiat deposit cadence (hourly dispute sweep)",
    )
    parser.add_argument(
        "--in-process-bus",
        action="store_true",
        help="Keep settlement events in process (local runs only, nothing is delivered)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    return parser


# ============================================================
# WIRING
# ============================================================

@dataclass
class SettlementRuntime:
    """Everything a worker process needs."""

    config: SettlementConfig
    database: SettlementDatabase
    bus: MessageBus
    alerts: AlertDispatcher
    publisher: EscrowEventPublisher
    service: TradeStateMachine
    scheduler: SweepScheduler

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.bus.close()
        await self.alerts.close()
        await self.database.dispose()


def build_runtime(
    config: SettlementConfig,
    clock: Optional[ClockProtocol] = None,
    in_process_bus: bool = False,
) -> SettlementRuntime:
    """
    Wire the worker.

    Raises:
        ConfigurationError: No message bus URL and no explicit
            in-process opt-in. Events marked delivered on an
            in-process bus never leave the worker.
    """
    if not config.publisher.rest_proxy_url and not in_process_bus:
        raise ConfigurationError(
            "SETTLEMENT_KAFKA_REST_URL is not set; "
            "pass --in-process-bus to run without a message bus"
        )

    clock = clock or SystemClock()
    database = SettlementDatabase(config.database)
    store = SqlAlchemyTradeStore(database)

    if config.publisher.rest_proxy_url:
        bus: MessageBus = RestProxyMessageBus(
            config.publisher.rest_proxy_url,
            timeout_seconds=config.publisher.request_timeout_seconds,
        )
    else:
        logger.warning("Using the in-process bus, settlement events are NOT delivered")
        bus = InMemoryMessageBus()

    sender = TelegramAlerter(config.alerting) if config.alerting.enabled else None
    alerts = AlertDispatcher(sender)

    publisher = EscrowEventPublisher(store, bus, clock, config.publisher, alerts)
    service = TradeStateMachine(store, publisher, clock, config)

    sweeps = [
        sweep_class(service, store, clock, config, alerts)
        for sweep_class in (HardExpirySweep, PolicyTimeoutSweep, DisputeExpirySweep)
    ]
    scheduler = SweepScheduler(sweeps, config.schedule, alerts)

    return SettlementRuntime(
        config=config,
        database=database,
        bus=bus,
        alerts=alerts,
        publisher=publisher,
        service=service,
        scheduler=scheduler,
    )


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace) -> int:
    """
    Async main entry point.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    config = SettlementConfig.from_env()
    if args.fiat_deposit:
        config.schedule.dispute_expiry_interval_seconds = (
            SettlementConfig.for_fiat_deposit().schedule.dispute_expiry_interval_seconds
        )

    runtime = build_runtime(config, in_process_bus=args.in_process_bus)

    try:
        if args.init_db:
            await runtime.database.create_all()

        if args.republish:
            delivered = await runtime.publisher.republish_failed()
            logger.info(f"Re-published {delivered} events")
            return 0

        if args.once:
            result = await runtime.scheduler.run_once(args.once)
            return 0 if result.success else 1

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass

        await runtime.scheduler.start()
        await stop_event.wait()
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await runtime.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(async_main(args))
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
