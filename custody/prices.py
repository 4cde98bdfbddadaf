from __future__ import annotations
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple
import logging
import random

import numpy as np

from .catalog import AssetCatalog
from .config import SimulationConfig
from .core import PricePoint, ValidationError

logger = logging.getLogger(__name__)

class PriceSimulator:
    """
    Current price and capped history per asset.

    current_price() is a pure read. advance() runs one random-walk tick; whether
    reads imply a tick is decided by the engine's simulation_mode.
    """
    def __init__(self, cfg: SimulationConfig, catalog: AssetCatalog,
                 rng: random.Random, clock: Callable[[], int]) -> None:
        self.cfg = cfg
        self.catalog = catalog
        self.rng = rng
        self.clock = clock
        self._history: Dict[str, Deque[PricePoint]] = {}
        now = clock()
        for asset in catalog.list():
            price = float(cfg.initial_prices.get(asset.key, cfg.price_floor))
            if price <= 0:
                raise ValueError(f"initial price for {asset.key} must be positive")
            self._history[asset.key] = deque([PricePoint(price, now)], maxlen=cfg.history_maxlen)

    def _series(self, asset_key: str) -> Deque[PricePoint]:
        self.catalog.get(asset_key)
        return self._history[asset_key]

    def current_price(self, asset_key: str) -> float:
        return self._series(asset_key)[-1].price

    def prices(self) -> Dict[str, float]:
        return {key: series[-1].price for key, series in self._history.items()}

    def _append(self, asset_key: str, price: float) -> None:
        self._history[asset_key].append(PricePoint(price, self.clock()))

    def advance(self, asset_key: str) -> float:
        asset = self.catalog.get(asset_key)
        current = self.current_price(asset_key)
        volatility = self.cfg.volatility_for_tier(asset.tier)
        trend = (self.rng.random() - self.cfg.trend_bias) * self.cfg.trend_scale
        walk = (self.rng.random() - 0.5) * volatility
        new_price = max(current * (1 + trend + walk), self.cfg.price_floor)
        new_price = round(new_price, 2)
        self._append(asset_key, new_price)
        return new_price

    def advance_all(self) -> Dict[str, float]:
        moved = {key: self.advance(key) for key in self.catalog.keys()}
        logger.info("Market prices updated: %s", moved)
        return moved

    def set_price(self, asset_key: str, price: float) -> float:
        self.catalog.get(asset_key)
        if price <= 0:
            raise ValidationError("Price must be positive")
        old = self.current_price(asset_key)
        self._append(asset_key, float(price))
        logger.info("Price updated for %s: %s -> %s", asset_key, old, price)
        return old

    def history(self, asset_key: str, limit: Optional[int] = None) -> List[PricePoint]:
        series = list(self._series(asset_key))
        if limit is not None:
            series = series[-limit:] if limit > 0 else []
        return series

    def last_two(self, asset_key: str) -> Optional[Tuple[PricePoint, PricePoint]]:
        series = self._series(asset_key)
        if len(series) < 2:
            return None
        return series[-2], series[-1]

    def price_change(self, asset_key: str) -> Tuple[float, float]:
        pair = self.last_two(asset_key)
        if pair is None:
            return 0.0, 0.0
        prev, cur = pair
        change = cur.price - prev.price
        pct = change / prev.price * 100 if prev.price > 0 else 0.0
        return change, pct

    def volatility(self, asset_key: str, window: Optional[int] = None) -> float:
        window = window or self.cfg.volatility_window
        recent = np.array([p.price for p in self.history(asset_key, limit=window)], dtype=float)
        if recent.size < 2:
            return 0.0
        mean = float(recent.mean())
        if mean <= 0:
            return 0.0
        return float(recent.std()) / mean
