from __future__ import annotations
from collections import deque
from typing import Any, Deque, Dict, List, Optional
import pandas as pd

MARKET_COLUMNS = [
    "tick", "timestamp", "asset", "price", "yield_rate",
    "accumulated_yield", "custody", "custody_value",
]

class MetricsStore:
    """
    Per-step market rows (one per asset) and ledger rows, kept in bounded
    buffers so a long-running ticker does not grow memory without limit.
    """
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.market_rows: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self.ledger_rows: Deque[Dict[str, Any]] = deque(maxlen=maxlen)

    def add_market_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.market_rows.extend(rows)

    def add_ledger(self, row: Dict[str, Any]) -> None:
        self.ledger_rows.append(row)

    def market_df(self) -> pd.DataFrame:
        return pd.DataFrame(list(self.market_rows), columns=MARKET_COLUMNS)

    def ledger_df(self) -> pd.DataFrame:
        return pd.DataFrame(list(self.ledger_rows))

    def market_series(self, value: str) -> pd.DataFrame:
        # tick x asset, for line charts
        df = self.market_df()
        if df.empty:
            return df
        return df.pivot_table(index="tick", columns="asset", values=value)
