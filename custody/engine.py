from __future__ import annotations
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import math
import random
import threading
import time

import numpy as np
import pandas as pd

from .catalog import AssetCatalog
from .config import SimulationConfig
from .core import (
    CustodyError, Event, EventLog, TransferHistory, ValidationError,
)
from .ledger import CustodyLedger, MintEngine, TransferEngine
from .metrics import MetricsStore
from .prices import PriceSimulator
from .yields import YieldAccrualEngine

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

VOLATILITY_LABELS = {1: "Low", 2: "Medium", 3: "High"}

def now_ms() -> int:
    return int(time.time() * 1000)

def _locked(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)

def _require(**fields: Any) -> None:
    missing = [name for name, value in fields.items() if value is None or value == ""]
    if missing:
        names = list(fields)
        raise ValidationError(f"{', '.join(names[:-1])}, and {names[-1]} are required"
                              if len(names) > 2 else f"{' and '.join(names)} are required")

def _positive_price(value: Any) -> float:
    if not _is_number(value):
        raise ValidationError("newPrice must be a number")
    if value <= 0:
        raise ValidationError("Price must be positive")
    return float(value)

def _asset_lines(assets: Any, amounts: Any) -> List[Tuple[str, float]]:
    if not isinstance(assets, (list, tuple)) or not isinstance(amounts, (list, tuple)):
        raise ValidationError("assets and amounts must be arrays")
    if len(assets) != len(amounts):
        raise ValidationError("assets and amounts arrays must have same length")
    lines = []
    for asset, amount in zip(assets, amounts):
        if not isinstance(asset, str) or not asset:
            raise ValidationError(f"invalid asset key: {asset!r}")
        if not _is_number(amount) or amount < 0:
            raise ValidationError(f"invalid amount for {asset}: {amount!r}")
        lines.append((asset, amount))
    return lines


class CustodyEngine:
    """
    The whole custody simulation: catalog, prices, yields, ledger and history.

    Every public method holds one re-entrant lock for its full duration, so a
    transfer's debit and credit are never observed half-applied, and a
    SimulationTicker serializes with request-driven calls.

    With cfg.simulation_mode == "on_demand", get_asset_price() moves all prices
    first, get_total_yield() accrues and drifts rates first, and
    simulation_data() runs a full step. In "manual" mode those reads are pure
    and simulation only advances through step().
    """
    def __init__(self, cfg: Optional[SimulationConfig] = None, seed: int = 1,
                 clock: Optional[Callable[[], int]] = None) -> None:
        self.cfg = cfg or SimulationConfig()
        self.rng = random.Random(seed)
        self.clock = clock or now_ms
        self._lock = threading.RLock()

        self.tick: int = 0
        self.log = EventLog(maxlen=self.cfg.event_log_maxlen)
        self.metrics = MetricsStore(maxlen=self.cfg.metrics_maxlen)

        self.created_ts = self.clock()
        self.catalog = AssetCatalog.default(created_ts=self.created_ts)
        self.prices = PriceSimulator(self.cfg, self.catalog, self.rng, self.clock)
        self.yields = YieldAccrualEngine(self.cfg, self.catalog, self.prices, self.rng)
        self.ledger = CustodyLedger(self.cfg.initial_holdings, assets=self.catalog.keys())
        self.history = TransferHistory()
        self.transfers = TransferEngine(self.cfg, self.catalog, self.ledger, self.history, self.clock)
        self.minter = MintEngine(self.catalog, self.ledger, self.clock, maxlen=self.cfg.mint_intent_maxlen)

        self.snapshot_metrics()

    # -----------------------------
    # Simulation ticks
    # -----------------------------
    def _accrue(self, now: int) -> None:
        for key, amount in self.yields.accrue(now).items():
            self.log.add(Event(now, "YIELD_ACCRUED", asset_id=key, amount=amount))

    def _move_market(self, now: int) -> None:
        moved = self.prices.advance_all()
        self.log.add(Event(now, "MARKET_MOVED", meta={"prices": moved}))

    def _fluctuate(self, now: int) -> None:
        rates = self.yields.fluctuate_rates()
        self.log.add(Event(now, "YIELD_RATES_DRIFTED", meta={"rates": rates}))

    @_locked
    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.tick += 1
            now = self.clock()
            self._accrue(now)
            self._move_market(now)
            self._fluctuate(now)
            self.snapshot_metrics()

    @_locked
    def set_simulation_mode(self, mode: str) -> None:
        if mode not in ("on_demand", "manual"):
            raise ValidationError(f"unknown simulation mode: {mode!r}")
        if mode != self.cfg.simulation_mode:
            logger.info("Simulation mode %s -> %s", self.cfg.simulation_mode, mode)
        self.cfg.simulation_mode = mode

    @_locked
    def snapshot_metrics(self) -> None:
        stride = int(self.cfg.metrics_stride or 0)
        if stride <= 0 or self.tick % stride != 0:
            return
        now = self.clock()
        accumulated = self.yields.accumulated_by_asset()
        custody = self.ledger.protocol_custody()
        rows = []
        for asset in self.catalog.list():
            price = self.prices.current_price(asset.key)
            rows.append({
                "tick": self.tick,
                "timestamp": now,
                "asset": asset.key,
                "price": price,
                "yield_rate": asset.yield_rate,
                "accumulated_yield": accumulated.get(asset.key, 0.0),
                "custody": custody.get(asset.key, 0),
                "custody_value": price * custody.get(asset.key, 0),
            })
        self.metrics.add_market_rows(rows)
        self.metrics.add_ledger({
            "tick": self.tick,
            "timestamp": now,
            "transfers_total": self.history.count(),
            "mint_intents_total": self.minter.total,
            "custody_value": sum(r["custody_value"] for r in rows),
            "accumulated_yield_total": self.yields.total_accumulated(),
        })

    # -----------------------------
    # Assets / prices
    # -----------------------------
    @_locked
    def list_assets(self) -> List[Dict[str, Any]]:
        out = []
        for asset in self.catalog.list():
            row = asset.public_dict()
            row["currentPrice"] = self.prices.current_price(asset.key)
            out.append(row)
        return out

    @_locked
    def get_asset_price(self, asset_address: Optional[str]) -> Dict[str, Any]:
        if not asset_address:
            raise ValidationError("Asset address is required")
        key = self.catalog.resolve_by_token(asset_address)
        now = self.clock()
        if self.cfg.on_demand:
            self._move_market(now)

        asset = self.catalog.get(key)
        change, change_pct = self.prices.price_change(key)
        return {
            "assetKey": key,
            "price": self.prices.current_price(key),
            "name": asset.name,
            "timestamp": now,
            "priceChange": change,
            "priceChangePercent": round(change_pct, 2),
            "tier": asset.tier,
            "yieldRate": asset.yield_rate,
            "marketData": {
                "volatility": VOLATILITY_LABELS.get(asset.tier, "High"),
                "realizedVolatility": self.prices.volatility(key),
            },
        }

    @_locked
    def prices_overview(self) -> Dict[str, Dict[str, Any]]:
        out = {}
        for asset in self.catalog.list():
            last = self.prices.history(asset.key, limit=1)[-1]
            out[asset.key] = {
                "price": last.price,
                "name": asset.name,
                "tokenAddr": asset.token_address,
                "lastUpdated": last.timestamp,
            }
        return out

    def _apply_price(self, key: str, new_price: Any) -> Dict[str, Any]:
        asset = self.catalog.get(key)
        price = _positive_price(new_price)
        old = self.prices.set_price(key, price)
        now = self.clock()
        self.log.add(Event(now, "PRICE_UPDATED", asset_id=key, amount=price, meta={"old": old}))
        return {"assetKey": key, "oldPrice": old, "newPrice": price, "name": asset.name, "timestamp": now}

    @_locked
    def update_price(self, asset_key: Optional[str], new_price: Any) -> Dict[str, Any]:
        _require(assetKey=asset_key, newPrice=new_price)
        return self._apply_price(asset_key, new_price)

    @_locked
    def update_price_by_token(self, token_address: Optional[str], new_price: Any) -> Dict[str, Any]:
        _require(tokenAddress=token_address, newPrice=new_price)
        key = self.catalog.resolve_by_token(token_address)
        result = self._apply_price(key, new_price)
        result["tokenAddress"] = token_address
        return result

    @_locked
    def update_prices(self, updates: Any) -> Dict[str, Any]:
        """
        Batch price update. Each item names assetKey or tokenAddress plus
        newPrice; a bad item is reported in errors and the rest still apply.
        """
        if not isinstance(updates, (list, tuple)):
            raise ValidationError("updates array is required")
        successful, errors = [], []
        for update in updates:
            if not isinstance(update, dict):
                errors.append({"assetKey": None, "error": "update must be an object"})
                continue
            asset_key = update.get("assetKey")
            token = update.get("tokenAddress")
            try:
                if asset_key:
                    successful.append(self.update_price(asset_key, update.get("newPrice")))
                elif token:
                    successful.append(self.update_price_by_token(token, update.get("newPrice")))
                else:
                    raise ValidationError("assetKey and newPrice are required")
            except CustodyError as e:
                errors.append({"assetKey": asset_key or token, "error": str(e)})
        return {"successful": successful, "errors": errors, "timestamp": self.clock()}

    @_locked
    def price_history(self, asset_key: str) -> Dict[str, Any]:
        asset = self.catalog.get(asset_key)
        return {
            "assetKey": asset_key,
            "name": asset.name,
            "history": [p.to_dict() for p in self.prices.history(asset_key)],
        }

    @_locked
    def history_df(self, asset_key: str) -> pd.DataFrame:
        return pd.DataFrame([p.to_dict() for p in self.prices.history(asset_key)], columns=["price", "timestamp"])

    # -----------------------------
    # Yields
    # -----------------------------
    @_locked
    def get_total_yield(self) -> Dict[str, Any]:
        now = self.clock()
        if self.cfg.on_demand:
            self._accrue(now)
            self._fluctuate(now)

        total = self.yields.total_accumulated()
        by_asset = {}
        for key, amount in self.yields.accumulated_by_asset().items():
            asset = self.catalog.get(key)
            price = self.prices.current_price(key)
            pct = amount / price * 100 if price > 0 else 0.0
            by_asset[key] = {
                "absoluteYield": amount,
                "yieldPercentage": round(pct, 2),
                "assetName": asset.name,
                "currentPrice": price,
                "yieldRate": asset.yield_rate,
                "tier": asset.tier,
            }
        price_sum = sum(self.prices.prices().values())
        vols = [self.prices.volatility(key) for key in self.catalog.keys()]
        return {
            "totalYield": self._fixed_point(total),
            "totalAccumulated": total,
            "yieldsByAsset": by_asset,
            "marketSentiment": {
                "overallYield": round(total / price_sum * 100, 2) if price_sum > 0 else 0.0,
                "marketVolatility": float(np.mean(vols)) * 100 if vols else 0.0,
            },
            "timestamp": now,
            "simulationData": {
                "simulationMode": self.cfg.simulation_mode,
                "yieldAccrualPeriodMs": self.cfg.tick_duration_ms,
                "periodsPerYear": self.cfg.periods_per_year,
            },
        }

    @_locked
    def distribute_yields(self) -> Dict[str, Any]:
        now = self.clock()
        total = self.yields.distribute()
        self.log.add(Event(now, "YIELDS_DISTRIBUTED", amount=total))
        return {
            "distributedYield": self._fixed_point(total),
            "distributedTotal": total,
            "message": "Yields distributed and reset",
        }

    def _fixed_point(self, value: float) -> int:
        return int(math.floor(value * self.cfg.yield_scale))

    # -----------------------------
    # Custody
    # -----------------------------
    @_locked
    def verify_holdings(self, institution_address: Optional[str], assets: Any, amounts: Any) -> Dict[str, Any]:
        _require(institutionAddress=institution_address, assets=assets, amounts=amounts)
        lines = _asset_lines(assets, amounts)
        result = self.transfers.verify_holdings(institution_address, lines)
        logger.info("Holdings verification for %s: verified=%s", institution_address, result.verified)
        return {
            "verified": result.verified,
            "institutionAddress": institution_address,
            "results": [line.to_dict() for line in result.lines],
            "message": "All holdings verified" if result.verified else "Insufficient holdings for some assets",
        }

    @_locked
    def transfer_assets(self, from_institution: Optional[str], to_protocol: Optional[str],
                        assets: Any, amounts: Any, transfer_id: Optional[str] = None) -> Dict[str, Any]:
        _require(fromInstitution=from_institution, toProtocol=to_protocol, assets=assets, amounts=amounts)
        lines = _asset_lines(assets, amounts)
        if transfer_id is not None and not isinstance(transfer_id, str):
            raise ValidationError("transferId must be a string")
        record = self.transfers.transfer_in(from_institution, to_protocol, lines, transfer_id or None)
        for line in record.lines:
            event_type = "TRANSFER_LINE_EXECUTED" if line.success else "TRANSFER_LINE_FAILED"
            self.log.add(Event(record.timestamp, event_type, actor_id=from_institution, asset_id=line.asset,
                               amount=line.amount, meta={"transferId": record.transfer_id, "error": line.error}))
        return {
            "success": record.success,
            "transferId": record.transfer_id,
            "results": [line.to_dict() for line in record.lines],
            "message": "Transfer completed successfully" if record.success else "Transfer completed with failures",
        }

    @_locked
    def mint(self, protocol_address: Optional[str], assets: Any, amounts: Any,
             recipient: Optional[str]) -> Dict[str, Any]:
        _require(protocolAddress=protocol_address, assets=assets, amounts=amounts, recipient=recipient)
        lines = _asset_lines(assets, amounts)
        record = self.minter.mint(protocol_address, lines, recipient)
        for line in record.lines:
            event_type = "MINT_READY" if line.success else "MINT_FAILED"
            self.log.add(Event(record.timestamp, event_type, actor_id=recipient, asset_id=line.asset,
                               amount=line.amount, meta={"tokenizationId": record.tokenization_id}))
        return {
            "success": record.success,
            "tokenizationId": record.tokenization_id,
            "recipient": recipient,
            "results": [line.to_dict() for line in record.lines],
            "message": "ERC20 tokens ready to mint" if record.success else "Insufficient custody for some assets",
        }

    @_locked
    def holdings(self, institution_address: str) -> Dict[str, Any]:
        return {
            "institutionAddress": institution_address,
            "holdings": self.ledger.holdings_of(institution_address),
            "timestamp": self.clock(),
        }

    @_locked
    def protocol_custody(self) -> Dict[str, Any]:
        return {"custody": self.ledger.protocol_custody(), "timestamp": self.clock()}

    @_locked
    def transfer_history(self) -> Dict[str, Any]:
        return {
            "transfers": [record.to_dict() for record in self.history.all()],
            "count": self.history.count(),
        }

    # -----------------------------
    # Snapshots
    # -----------------------------
    @_locked
    def simulation_data(self) -> Dict[str, Any]:
        if self.cfg.on_demand:
            self.step()
        now = self.clock()
        prices = self.prices.prices()
        custody = self.ledger.protocol_custody()
        accumulated = self.yields.accumulated_by_asset()
        assets = self.catalog.list()

        yield_by_tier = {}
        for tier in (1, 2, 3):
            yield_by_tier[f"tier{tier}"] = sum(
                accumulated.get(a.key, 0.0) for a in assets if a.tier == tier
            )

        return {
            "timestamp": now,
            "marketOverview": {
                "totalMarketValue": sum(prices[k] * custody.get(k, 0) for k in prices),
                "averagePrice": float(np.mean(list(prices.values()))),
                "priceVolatility": float(np.mean([self.prices.volatility(k) for k in prices])),
            },
            "yieldMetrics": {
                "totalAccumulatedYield": self.yields.total_accumulated(),
                "averageYieldRate": float(np.mean([a.yield_rate for a in assets])),
                "yieldByTier": yield_by_tier,
            },
            "assetDetails": [
                {
                    "assetKey": a.key,
                    "name": a.name,
                    "tier": a.tier,
                    "currentPrice": prices[a.key],
                    "yieldRate": a.yield_rate,
                    "accumulatedYield": accumulated.get(a.key, 0.0),
                    "priceHistory": [p.to_dict() for p in self.prices.history(a.key, limit=5)],
                    "custodyAmount": custody.get(a.key, 0),
                    "marketValue": prices[a.key] * custody.get(a.key, 0),
                }
                for a in assets
            ],
            "simulationSettings": {
                "simulationMode": self.cfg.simulation_mode,
                "tickDurationMs": self.cfg.tick_duration_ms,
                "priceVolatilityByTier": {
                    f"tier{tier}": f"{vol * 100:g}%" for tier, vol in sorted(self.cfg.volatility_by_tier.items())
                },
                "yieldRateFloorBP": self.cfg.yield_rate_floor_bp,
                "historyMaxlen": self.cfg.history_maxlen,
            },
        }

