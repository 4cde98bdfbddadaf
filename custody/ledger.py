from __future__ import annotations
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple
import logging

from .catalog import AssetCatalog
from .config import SimulationConfig
from .core import (
    Balances, HoldingsLine, HoldingsVerification, MintLine, MintRecord,
    TransferHistory, TransferLine, TransferRecord, ValidationError, format_balances,
)

logger = logging.getLogger(__name__)

AssetAmounts = Sequence[Tuple[str, float]]

class CustodyLedger:
    """Institution holdings and the protocol's custody pool."""
    def __init__(self, initial_holdings: Optional[Dict[str, Dict[str, float]]] = None,
                 assets: Sequence[str] = ()) -> None:
        self.holdings: Dict[str, Balances] = {
            inst: Balances(bal) for inst, bal in (initial_holdings or {}).items()
        }
        self.custody = Balances({key: 0 for key in assets})

    def holdings_of(self, institution: str) -> Dict[str, float]:
        bal = self.holdings.get(institution)
        return bal.snapshot() if bal is not None else {}

    def balance(self, institution: str, asset_id: str) -> float:
        bal = self.holdings.get(institution)
        return bal.get(asset_id) if bal is not None else 0

    def custody_balance(self, asset_id: str) -> float:
        return self.custody.get(asset_id)

    def protocol_custody(self) -> Dict[str, float]:
        return self.custody.snapshot()

    def debit(self, institution: str, asset_id: str, amount: float) -> bool:
        # an institution with no entry holds zero of everything
        bal = self.holdings.get(institution)
        if bal is None:
            return amount <= 0
        return bal.sub(asset_id, amount)

    def credit(self, asset_id: str, amount: float) -> None:
        self.custody.add(asset_id, amount)


class TransferEngine:
    def __init__(self, cfg: SimulationConfig, catalog: AssetCatalog, ledger: CustodyLedger,
                 history: TransferHistory, clock: Callable[[], int]) -> None:
        self.cfg = cfg
        self.catalog = catalog
        self.ledger = ledger
        self.history = history
        self.clock = clock
        self._seq = 0

    def _debug_ledger_change(self, institution: str, asset: str, amount: float,
                             before: Dict[str, float], after: Dict[str, float]) -> None:
        if not self.cfg.debug_ledger or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[LEDGER] institution=%s asset=%s amount=%.2f before={ %s } after={ %s } custody={ %s }",
            institution,
            asset,
            amount,
            format_balances(before),
            format_balances(after),
            format_balances(self.ledger.protocol_custody()),
        )

    def verify_holdings(self, institution: str, lines: AssetAmounts) -> HoldingsVerification:
        """
        Side-effect free check of each line against current holdings.

        A line naming an asset outside the catalog is never sufficient, even for
        a zero amount, because transfer_in fails such a line with "Unknown asset".
        """
        results = []
        for asset, requested in lines:
            available = self.ledger.balance(institution, asset)
            results.append(HoldingsLine(
                asset=asset,
                requested=requested,
                available=available,
                sufficient=asset in self.catalog and available >= requested,
            ))
        return HoldingsVerification(institution=institution, lines=tuple(results))

    def next_transfer_id(self, now: int) -> str:
        while True:
            self._seq += 1
            transfer_id = f"transfer_{now}" if self._seq == 1 else f"transfer_{now}_{self._seq}"
            if transfer_id not in self.history:
                return transfer_id

    def transfer_in(self, institution: str, protocol: str, lines: AssetAmounts,
                    transfer_id: Optional[str] = None) -> TransferRecord:
        """
        Move each line from the institution into protocol custody.

        Lines are applied independently: an insufficient line fails on its own
        and earlier successful lines in the same call are not rolled back. The
        record is appended to history whatever the outcome.
        """
        if transfer_id is not None and transfer_id in self.history:
            raise ValidationError(f"transferId already used: {transfer_id}")
        now = self.clock()
        transfer_id = transfer_id or self.next_transfer_id(now)
        debug = self.cfg.debug_ledger and logger.isEnabledFor(logging.DEBUG)

        results: List[TransferLine] = []
        for asset, amount in lines:
            if asset not in self.catalog:
                results.append(TransferLine(asset=asset, amount=amount, success=False, error="Unknown asset"))
                continue
            if debug:
                before = self.ledger.holdings_of(institution)
            if not self.ledger.debit(institution, asset, amount):
                results.append(TransferLine(asset=asset, amount=amount, success=False, error="Insufficient holdings"))
                continue
            self.ledger.credit(asset, amount)
            if debug:
                self._debug_ledger_change(institution, asset, amount, before, self.ledger.holdings_of(institution))
            results.append(TransferLine(
                asset=asset,
                amount=amount,
                success=True,
                new_institution_balance=self.ledger.balance(institution, asset),
                new_protocol_balance=self.ledger.custody_balance(asset),
            ))

        record = TransferRecord(
            transfer_id=transfer_id,
            from_institution=institution,
            to_protocol=protocol,
            lines=tuple(results),
            timestamp=now,
        )
        self.history.append(record)
        logger.info(
            "Asset transfer %s from %s: %d/%d lines succeeded",
            transfer_id, institution, sum(1 for r in results if r.success), len(results),
        )
        return record


class MintEngine:
    """
    Checks protocol custody covers a tokenization and records the intent.
    Actual minting happens outside; custody balances are never touched here.
    """
    def __init__(self, catalog: AssetCatalog, ledger: CustodyLedger, clock: Callable[[], int],
                 maxlen: Optional[int] = None) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.clock = clock
        self.intents: Deque[MintRecord] = deque(maxlen=maxlen)
        self.total = 0

    def mint(self, protocol: str, lines: AssetAmounts, recipient: str) -> MintRecord:
        now = self.clock()
        results: List[MintLine] = []
        for asset, amount in lines:
            definition = self.catalog.find(asset)
            if definition is None:
                results.append(MintLine(asset=asset, amount=amount, success=False, error="Unknown asset"))
            elif self.ledger.custody_balance(asset) >= amount:
                results.append(MintLine(
                    asset=asset,
                    amount=amount,
                    success=True,
                    token_address=definition.token_address,
                    recipient=recipient,
                ))
            else:
                results.append(MintLine(asset=asset, amount=amount, success=False,
                                        error="Insufficient custody balance"))

        record = MintRecord(
            tokenization_id=f"tokenization_{now}_{self.total + 1}",
            protocol_address=protocol,
            recipient=recipient,
            lines=tuple(results),
            timestamp=now,
        )
        self.intents.append(record)
        self.total += 1
        logger.info(
            "Mint intent %s for %s: success=%s", record.tokenization_id, recipient, record.success,
        )
        return record
