from dataclasses import dataclass, field
from typing import Dict

INSTITUTION_DEMO = "0x1234567890123456789012345678901234567890"

@dataclass
class SimulationConfig:
    # Simulation mode
    simulation_mode: str = "on_demand"  # "on_demand" (reads tick) or "manual"
    protocol_id: str = "protocol_vault_001"

    # Yield accrual
    tick_duration_ms: int = 10_000     # one accrual period, compressed from an hour
    periods_per_year: int = 365 * 24
    yield_volatility: float = 0.10     # +/- 5% per drift
    yield_rate_floor_bp: float = 50.0  # 0.5%
    capital_gains_factor: float = 0.10
    yield_scale: float = 1e18          # fixed-point scale for reported totals

    # Price walk
    volatility_by_tier: Dict[int, float] = field(
        default_factory=lambda: {1: 0.01, 2: 0.025, 3: 0.04}
    )
    default_volatility: float = 0.02
    trend_bias: float = 0.45           # < 0.5 gives a slight upward drift
    trend_scale: float = 0.005
    price_floor: float = 1.0
    history_maxlen: int = 100
    volatility_window: int = 10

    # Initial state
    initial_prices: Dict[str, float] = field(
        default_factory=lambda: {"INR-SGB": 100.0, "INR-CORP": 1000.0, "INR-MFD": 10.0}
    )
    initial_holdings: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {
            INSTITUTION_DEMO: {"INR-SGB": 1000, "INR-CORP": 500, "INR-MFD": 2000},
        }
    )

    # Bookkeeping
    event_log_maxlen: int | None = 5000
    metrics_stride: int = 1
    metrics_maxlen: int | None = 30_000   # market rows, one per asset per step
    mint_intent_maxlen: int | None = 5000

    # Debug
    debug_ledger: bool = True

    def __post_init__(self) -> None:
        if self.simulation_mode not in ("on_demand", "manual"):
            raise ValueError(f"unknown simulation_mode: {self.simulation_mode!r}")
        if self.tick_duration_ms <= 0:
            raise ValueError("tick_duration_ms must be positive")
        if self.periods_per_year <= 0:
            raise ValueError("periods_per_year must be positive")
        if self.history_maxlen < 2:
            self.history_maxlen = 2
        self.volatility_by_tier = {int(k): float(v) for k, v in self.volatility_by_tier.items()}

    @property
    def on_demand(self) -> bool:
        return self.simulation_mode == "on_demand"

    def volatility_for_tier(self, tier: int) -> float:
        return float(self.volatility_by_tier.get(int(tier), self.default_volatility))
