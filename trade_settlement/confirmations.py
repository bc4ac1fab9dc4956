"""
Trade Settlement - Confirmation Intake.

============================================================
PURPOSE
============================================================
Inbound confirmations from the payment side and the ledger.

CONFIRMATIONS:
- payment_confirmed        fiat payment observed     -> mark_paid
- settlement_acknowledged  escrow lock acknowledged  -> acknowledge_settlement
- dispute_resolved         verdict on a dispute      -> resolve_dispute

Raw bus payloads are dispatched by operationType. Unknown trades
are logged and skipped; illegal edges are benign duplicates.

============================================================
"""

import logging
from typing import Any, Dict, Optional, Protocol

from .errors import InvalidTransition, TradeNotFound
from .keys import extract_id_from_key
from .trade_service import TradeStateMachine
from .types import DisputeOutcome, OperationType, TradeRecord


logger = logging.getLogger(__name__)


class ConfirmationSink(Protocol):
    """Port for inbound confirmations."""

    async def payment_confirmed(self, trade_id: int) -> Optional[TradeRecord]:
        ...

    async def settlement_acknowledged(self, trade_id: int) -> Optional[TradeRecord]:
        ...

    async def dispute_resolved(self, trade_id: int, outcome: DisputeOutcome) -> Optional[TradeRecord]:
        ...


class ConfirmationHandler:
    """
    ConfirmationSink over the state machine service.

    Returns the trade after the confirmation, or None when the
    confirmation was skipped.
    """

    def __init__(self, service: TradeStateMachine):
        self._service = service

    # --------------------------------------------------------
    # SINK
    # --------------------------------------------------------

    async def payment_confirmed(self, trade_id: int) -> Optional[TradeRecord]:
        return await self._guarded("payment_confirmed", trade_id, self._service.mark_paid(trade_id))

    async def settlement_acknowledged(self, trade_id: int) -> Optional[TradeRecord]:
        return await self._guarded(
            "settlement_acknowledged", trade_id, self._service.acknowledge_settlement(trade_id)
        )

    async def dispute_resolved(self, trade_id: int, outcome: DisputeOutcome) -> Optional[TradeRecord]:
        return await self._guarded(
            "dispute_resolved", trade_id, self._service.resolve_dispute(trade_id, outcome)
        )

    async def _guarded(self, what: str, trade_id: int, operation) -> Optional[TradeRecord]:
        try:
            return await operation
        except TradeNotFound:
            logger.warning(f"{what}: trade {trade_id} not found, skipping")
            return None
        except InvalidTransition as e:
            logger.info(f"{what}: ignoring duplicate or late confirmation for trade {trade_id}: {e}")
            return None

    # --------------------------------------------------------
    # RAW PAYLOADS
    # --------------------------------------------------------

    async def handle(self, payload: Optional[Dict[str, Any]]) -> Optional[TradeRecord]:
        """
        Dispatch a raw bus payload.

        Accepts the trade fields at the top level or nested under
        "object".
        """
        if not payload:
            return None

        logger.info(f"Processing trade confirmation: {payload.get('operationType')}")

        if payload.get("isSuccess") is False:
            logger.error(
                f"Ledger rejected {payload.get('operationType')} for "
                f"{self._identifier(payload)}: {payload.get('errorMessage')}"
            )
            return None

        trade_id = self._trade_id(payload)
        if trade_id is None:
            logger.warning(f"Confirmation without a trade id: {payload}")
            return None

        data = payload.get("object") or payload
        try:
            operation = OperationType(payload.get("operationType"))
        except ValueError:
            logger.warning(f"Unknown operationType {payload.get('operationType')!r}")
            return None

        if operation == OperationType.TRADE_CREATE:
            return await self.settlement_acknowledged(trade_id)

        if operation == OperationType.TRADE_UPDATE:
            outcome = data.get("disputeOutcome")
            if outcome:
                try:
                    verdict = DisputeOutcome(str(outcome).lower())
                except ValueError:
                    logger.warning(f"Unknown dispute outcome {outcome!r} for trade {trade_id}")
                    return None
                return await self.dispute_resolved(trade_id, verdict)
            if str(data.get("status", "")).lower() == "paid":
                return await self.payment_confirmed(trade_id)
            logger.debug(f"Nothing to do for trade_update of trade {trade_id}")
            return None

        # Release and cancel acknowledgments carry no new information
        logger.info(f"Ledger acknowledged {operation.value} for trade {trade_id}")
        return None

    @staticmethod
    def _identifier(payload: Dict[str, Any]) -> Optional[str]:
        data = payload.get("object") or payload
        return data.get("identifier")

    def _trade_id(self, payload: Dict[str, Any]) -> Optional[int]:
        action_id = payload.get("actionId")
        if action_id is not None:
            try:
                return int(action_id)
            except (TypeError, ValueError):
                pass
        return extract_id_from_key(self._identifier(payload))
