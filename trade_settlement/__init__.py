"""
Trade Settlement Package.

============================================================
PURPOSE
============================================================
Settles peer-to-peer fiat/crypto trades: requests the escrow
lock, waits for the fiat payment, releases or disputes, and
reports every transition to the settlement ledger.

CRITICAL PRINCIPLE:
    "Only the state machine writes trade status."
    "Every transition produces exactly one settlement event."

AUTHORITY BOUNDARIES:
    CAN:
        - Move trades along the status graph
        - Cancel or dispute trades on timeout
        - Publish settlement events

    MUST NOT:
        - Move funds itself (the ledger does)
        - Touch a trade in a terminal state
        - Hold a trade lock while talking to the bus

============================================================
MODULES
============================================================
- types: Trade types, statuses, records
- config: Settlement configuration
- errors: Exceptions and error codes
- keys: Identifier and account key builders
- state_machine: Status graph and transition guard
- trade_service: The state machine service
- dispute: Dispute escalation policy
- supervisors: Timeout sweeps
- scheduler: Periodic sweep driver
- publisher: Settlement event publisher
- bus: Message bus transports
- confirmations: Inbound confirmation handling
- alerting: Telegram alerts
- models: ORM models for persistence
- database: Async engine and sessions
- store: Store port and in-memory store
- repository: SQLAlchemy store

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    TradeStatus,
    TakerSide,
    PaymentProofStatus,
    DisputeOutcome,
    DisputeResolution,
    OperationType,
    MessageKind,
    DeliveryStatus,
    # Dataclasses
    TradeRecord,
    TradeDraft,
    TradeMessageRecord,
    SettlementEventRecord,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    SweepScheduleConfig,
    TimeoutPolicyConfig,
    DisputePolicyConfig,
    PublisherConfig,
    DatabaseConfig,
    AlertingConfig,
    SettlementConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    SettlementError,
    InvalidTransition,
    ConcurrencyConflict,
    TradeNotFound,
    DeliveryFailure,
    MessageBusError,
    ConfigurationError,
    ErrorCategory,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
)

# ============================================================
# KEYS
# ============================================================
from .keys import (
    build_trade_identifier,
    build_offer_identifier,
    build_fiat_account_key,
    build_event_id,
    extract_id_from_key,
    extract_user_id_from_key,
    generate_trade_ref,
)

# ============================================================
# STATE MACHINE
# ============================================================
from .state_machine import (
    VALID_TRANSITIONS,
    OPERATION_FOR_STATUS,
    StateTransitionEvent,
    TransitionGuard,
    apply_transition,
)

# ============================================================
# PERSISTENCE
# ============================================================
from .store import (
    TradeStore,
    TradeTransaction,
    InMemoryTradeStore,
)
from .database import SettlementDatabase
from .repository import SqlAlchemyTradeStore

# ============================================================
# MESSAGING
# ============================================================
from .bus import (
    MessageBus,
    BusMessage,
    InMemoryMessageBus,
    RestProxyMessageBus,
)
from .publisher import (
    EscrowEventPublisher,
    build_trade_payload,
)

# ============================================================
# ALERTING
# ============================================================
from .alerting import (
    AlertSeverity,
    AlertType,
    Alert,
    TelegramAlerter,
    AlertDispatcher,
)

# ============================================================
# CORE
# ============================================================
from .trade_service import TradeStateMachine
from .dispute import DisputeEscalation
from .supervisors import (
    SweepOutcome,
    SweepResult,
    Sweep,
    HardExpirySweep,
    PolicyTimeoutSweep,
    DisputeExpirySweep,
)
from .scheduler import SweepScheduler
from .confirmations import (
    ConfirmationSink,
    ConfirmationHandler,
)


__all__ = [
    # Types
    "TradeStatus",
    "TakerSide",
    "PaymentProofStatus",
    "DisputeOutcome",
    "DisputeResolution",
    "OperationType",
    "MessageKind",
    "DeliveryStatus",
    "TradeRecord",
    "TradeDraft",
    "TradeMessageRecord",
    "SettlementEventRecord",
    # Config
    "SweepScheduleConfig",
    "TimeoutPolicyConfig",
    "DisputePolicyConfig",
    "PublisherConfig",
    "DatabaseConfig",
    "AlertingConfig",
    "SettlementConfig",
    # Errors
    "SettlementError",
    "InvalidTransition",
    "ConcurrencyConflict",
    "TradeNotFound",
    "DeliveryFailure",
    "MessageBusError",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    # Keys
    "build_trade_identifier",
    "build_offer_identifier",
    "build_fiat_account_key",
    "build_event_id",
    "extract_id_from_key",
    "extract_user_id_from_key",
    "generate_trade_ref",
    # State Machine
    "VALID_TRANSITIONS",
    "OPERATION_FOR_STATUS",
    "StateTransitionEvent",
    "TransitionGuard",
    "apply_transition",
    # Persistence
    "TradeStore",
    "TradeTransaction",
    "InMemoryTradeStore",
    "SettlementDatabase",
    "SqlAlchemyTradeStore",
    # Messaging
    "MessageBus",
    "BusMessage",
    "InMemoryMessageBus",
    "RestProxyMessageBus",
    "EscrowEventPublisher",
    "build_trade_payload",
    # Alerting
    "AlertSeverity",
    "AlertType",
    "Alert",
    "TelegramAlerter",
    "AlertDispatcher",
    # Core
    "TradeStateMachine",
    "DisputeEscalation",
    "SweepOutcome",
    "SweepResult",
    "Sweep",
    "HardExpirySweep",
    "PolicyTimeoutSweep",
    "DisputeExpirySweep",
    "SweepScheduler",
    "ConfirmationSink",
    "ConfirmationHandler",
]
