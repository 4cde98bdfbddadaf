from __future__ import annotations
from typing import Dict, Iterable, List, Optional

from .core import AssetDefinition, NotFoundError

DEFAULT_ASSETS = (
    dict(key="INR-SGB", name="Indian Sovereign Gold Bond", tier=1, haircut_bp=500, decimals=18,
         token_address="0xbDcfBEd3188040926bbEaBD70a25cFbE081F428d", yield_rate=250.0),
    dict(key="INR-CORP", name="Indian Corporate Bond", tier=2, haircut_bp=1000, decimals=18,
         token_address="0x4F1F27A247a11b41D85c1D9B22304D8DAB8ae736", yield_rate=800.0),
    dict(key="INR-MFD", name="Indian Mutual Fund", tier=3, haircut_bp=200, decimals=8,
         token_address="0x40fA3ffdefa6613680F98F75771b897F8020cdF7", yield_rate=1200.0),
)

class AssetCatalog:
    """
    Registry of tradable assets, kept in definition order.
    Only yield_rate and last_yield_ts are mutated after construction, by the yield engine.
    """
    def __init__(self, assets: Iterable[AssetDefinition]) -> None:
        self._assets: Dict[str, AssetDefinition] = {}
        self._by_token: Dict[str, str] = {}
        for asset in assets:
            if asset.key in self._assets:
                raise ValueError(f"duplicate asset key: {asset.key}")
            if asset.tier not in (1, 2, 3):
                raise ValueError(f"asset {asset.key} has invalid tier {asset.tier}")
            self._assets[asset.key] = asset
            self._by_token[asset.token_address.lower()] = asset.key

    @classmethod
    def default(cls, created_ts: int = 0) -> "AssetCatalog":
        return cls(AssetDefinition(last_yield_ts=created_ts, **fields) for fields in DEFAULT_ASSETS)

    def get(self, asset_key: str) -> AssetDefinition:
        asset = self._assets.get(asset_key)
        if asset is None:
            raise NotFoundError(f"Asset not found: {asset_key}")
        return asset

    def find(self, asset_key: str) -> Optional[AssetDefinition]:
        return self._assets.get(asset_key)

    def resolve_by_token(self, token_address: str) -> str:
        key = self._by_token.get((token_address or "").lower())
        if key is None:
            raise NotFoundError(f"Asset not found for token {token_address}")
        return key

    def list(self) -> List[AssetDefinition]:
        return list(self._assets.values())

    def keys(self) -> List[str]:
        return list(self._assets.keys())

    def __contains__(self, asset_key: object) -> bool:
        return asset_key in self._assets

    def __len__(self) -> int:
        return len(self._assets)
