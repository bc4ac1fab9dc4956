"""
Trade Settlement - Identifiers and Keys.

============================================================
PURPOSE
============================================================
Builders and parsers for the string keys exchanged with the
settlement ledger.

    trade-<id>                         message key / identifier
    offer-<id>                         offer key
    <user_id>-fiat-<account_id>        fiat account key
    trade-<id>:<operation>:<status>    idempotent event id

============================================================
"""

import secrets
from datetime import datetime
from typing import Optional, Union

from .types import OperationType, TradeStatus


def build_trade_identifier(trade_id: int) -> str:
    return f"trade-{trade_id}"


def build_offer_identifier(offer_id: int) -> str:
    return f"offer-{offer_id}"


def build_fiat_account_key(user_id: int, account_id: Optional[int]) -> Optional[str]:
    """Account key of a user's fiat account, None without an account."""
    if account_id is None:
        return None
    return f"{user_id}-fiat-{account_id}"


def build_event_id(
    trade_id: int,
    operation_type: Union[OperationType, str],
    status: Union[TradeStatus, str],
) -> str:
    """
    Idempotent key of one transition.

    The status graph is acyclic, so (operation, resulting status)
    names a transition of a trade at most once.
    """
    operation = operation_type.value if isinstance(operation_type, OperationType) else operation_type
    status_value = status.value if isinstance(status, TradeStatus) else status
    return f"{build_trade_identifier(trade_id)}:{operation}:{status_value}"


def extract_id_from_key(key: Optional[str]) -> Optional[int]:
    """Numeric id in the last dash-separated segment."""
    if not key:
        return None
    tail = str(key).split("-")[-1]
    if not tail.isdigit():
        return None
    return int(tail)


def extract_user_id_from_key(key: Optional[str]) -> Optional[int]:
    """User id in the first segment of an account key."""
    if not key or "-" not in str(key):
        return None
    head = str(key).split("-")[0]
    if not head.isdigit():
        return None
    return int(head)


def generate_trade_ref(now: datetime) -> str:
    """Human readable trade reference, e.g. T20250114A1B2C3D4."""
    return f"T{now.strftime('%Y%m%d')}{secrets.token_hex(4).upper()}"
