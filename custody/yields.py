from __future__ import annotations
from typing import Dict
import logging
import random

from .catalog import AssetCatalog
from .config import SimulationConfig
from .prices import PriceSimulator

logger = logging.getLogger(__name__)

class YieldAccrualEngine:
    """
    Accrues per-asset yield over elapsed ticks and lets yield rates drift.

    One tick is cfg.tick_duration_ms of wall time and stands for one of
    cfg.periods_per_year accrual periods, so a short tick compresses a year.
    """
    def __init__(self, cfg: SimulationConfig, catalog: AssetCatalog,
                 prices: PriceSimulator, rng: random.Random) -> None:
        self.cfg = cfg
        self.catalog = catalog
        self.prices = prices
        self.rng = rng
        self._accumulated: Dict[str, float] = {key: 0.0 for key in catalog.keys()}

    def period_rate(self, yield_rate_bp: float) -> float:
        return yield_rate_bp / 10000 / self.cfg.periods_per_year

    def accrue(self, now: int) -> Dict[str, float]:
        accrued: Dict[str, float] = {}
        for asset in self.catalog.list():
            elapsed = now - asset.last_yield_ts
            if elapsed <= 0:
                continue
            ticks = elapsed // self.cfg.tick_duration_ms
            if ticks <= 0:
                continue
            amount = self.prices.current_price(asset.key) * self.period_rate(asset.yield_rate) * ticks
            self._accumulated[asset.key] += amount
            asset.last_yield_ts = now
            accrued[asset.key] = amount
            logger.info("Accrued yield for %s: %.4f over %d ticks", asset.key, amount, ticks)
        return accrued

    def total_accumulated(self) -> float:
        return sum(self._accumulated.values())

    def accumulated_by_asset(self) -> Dict[str, float]:
        return dict(self._accumulated)

    def distribute(self) -> float:
        total = self.total_accumulated()
        for key in self._accumulated:
            self._accumulated[key] = 0.0
        logger.info("Distributed %.6f accumulated yield", total)
        return total

    def fluctuate_rates(self) -> Dict[str, float]:
        cfg = self.cfg
        rates: Dict[str, float] = {}
        for asset in self.catalog.list():
            change = (self.rng.random() - 0.5) * cfg.yield_volatility
            rate = max(asset.yield_rate * (1 + change), cfg.yield_rate_floor_bp)

            # capital-gains effect: rates follow recent price gains
            pair = self.prices.last_two(asset.key)
            if pair is not None:
                prev, cur = pair
                price_change = (cur.price - prev.price) / prev.price if prev.price > 0 else 0.0
                if price_change > 0:
                    rate *= 1 + price_change * cfg.capital_gains_factor

            asset.yield_rate = rate
            rates[asset.key] = rate
        return rates
