from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional, List, Tuple
from collections import deque


def format_balances(balances: Dict[str, float]) -> str:
    if not balances:
        return "(empty)"
    items = sorted(balances.items(), key=lambda kv: kv[0])
    return ", ".join(f"{asset}:{amount:.2f}" for asset, amount in items)

# -----------------------------
# Errors
# -----------------------------
class CustodyError(Exception):
    """Base for errors surfaced to callers of the custody engine."""

class ValidationError(CustodyError):
    """Malformed request: missing fields, mismatched lists, bad numbers."""

class NotFoundError(CustodyError):
    """Unknown asset key or token reference."""

# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    timestamp: int
    event_type: str
    actor_id: Optional[str] = None
    asset_id: Optional[str] = None
    amount: Optional[float] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]


# -----------------------------
# Assets / prices
# -----------------------------
@dataclass
class AssetDefinition:
    key: str
    name: str
    tier: int
    haircut_bp: int
    decimals: int
    token_address: str
    yield_rate: float
    last_yield_ts: int = 0
    country: str = "IN"

    def public_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "tier": self.tier,
            "haircutBP": self.haircut_bp,
            "decimals": self.decimals,
            "country": self.country,
            "yieldRate": self.yield_rate,
            "lastYieldDate": self.last_yield_ts,
        }

@dataclass(frozen=True)
class PricePoint:
    price: float
    timestamp: int

    def to_dict(self) -> dict:
        return {"price": self.price, "timestamp": self.timestamp}


# -----------------------------
# Balances
# -----------------------------
class Balances:
    def __init__(self, initial: Optional[Dict[str, float]] = None) -> None:
        self.inventory: Dict[str, float] = {}
        for asset_id, amount in (initial or {}).items():
            if amount < 0:
                raise ValueError(f"negative opening balance for {asset_id}: {amount}")
            self.inventory[asset_id] = amount

    def get(self, asset_id: str) -> float:
        return self.inventory.get(asset_id, 0)

    def add(self, asset_id: str, amount: float) -> None:
        self.inventory[asset_id] = self.get(asset_id) + amount

    def sub(self, asset_id: str, amount: float) -> bool:
        if self.get(asset_id) < amount:
            return False
        self.inventory[asset_id] = self.get(asset_id) - amount
        return True

    def snapshot(self) -> Dict[str, float]:
        return dict(self.inventory)


# -----------------------------
# Verification / transfer / mint results
# -----------------------------
@dataclass(frozen=True)
class HoldingsLine:
    asset: str
    requested: float
    available: float
    sufficient: bool

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "requested": self.requested,
            "available": self.available,
            "sufficient": self.sufficient,
        }

@dataclass(frozen=True)
class HoldingsVerification:
    institution: str
    lines: Tuple[HoldingsLine, ...]

    @property
    def verified(self) -> bool:
        return all(line.sufficient for line in self.lines)

@dataclass(frozen=True)
class TransferLine:
    asset: str
    amount: float
    success: bool
    new_institution_balance: Optional[float] = None
    new_protocol_balance: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"asset": self.asset, "amount": self.amount, "success": self.success}
        if self.success:
            out["newInstitutionBalance"] = self.new_institution_balance
            out["newProtocolBalance"] = self.new_protocol_balance
        else:
            out["error"] = self.error
        return out

@dataclass(frozen=True)
class TransferRecord:
    transfer_id: str
    from_institution: str
    to_protocol: str
    lines: Tuple[TransferLine, ...]
    timestamp: int

    @property
    def success(self) -> bool:
        return all(line.success for line in self.lines)

    def to_dict(self) -> dict:
        return {
            "transferId": self.transfer_id,
            "fromInstitution": self.from_institution,
            "toProtocol": self.to_protocol,
            "assets": [line.asset for line in self.lines],
            "amounts": [line.amount for line in self.lines],
            "results": [line.to_dict() for line in self.lines],
            "success": self.success,
            "timestamp": self.timestamp,
        }

@dataclass(frozen=True)
class MintLine:
    asset: str
    amount: float
    success: bool
    token_address: Optional[str] = None
    recipient: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"asset": self.asset, "amount": self.amount, "success": self.success}
        if self.success:
            out["tokenAddress"] = self.token_address
            out["recipient"] = self.recipient
        else:
            out["error"] = self.error
        return out

@dataclass(frozen=True)
class MintRecord:
    tokenization_id: str
    protocol_address: str
    recipient: str
    lines: Tuple[MintLine, ...]
    timestamp: int

    @property
    def success(self) -> bool:
        return all(line.success for line in self.lines)


# -----------------------------
# Transfer history
# -----------------------------
class TransferHistory:
    def __init__(self) -> None:
        self._records: List[TransferRecord] = []
        self._ids: set[str] = set()

    def append(self, record: TransferRecord) -> None:
        self._records.append(record)
        self._ids.add(record.transfer_id)

    def all(self) -> List[TransferRecord]:
        return list(self._records)

    def count(self) -> int:
        return len(self._records)

    def tail(self, n: int = 200) -> List[TransferRecord]:
        if n <= 0:
            return []
        return self._records[-n:]

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._ids
