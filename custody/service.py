from __future__ import annotations
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from .core import NotFoundError, ValidationError
from .engine import VERSION, CustodyEngine

logger = logging.getLogger(__name__)

Response = Tuple[int, Any]

ROUTE_DOCS = {
    "GET /": "API documentation (this endpoint)",
    "GET /assets": "Get all assets with current prices",
    "POST /getAssetPrice": "Get price by token address (moves prices in on-demand mode)",
    "GET /getTotalYield": "Get accumulated yields (accrues in on-demand mode)",
    "POST /distributeYields": "Distribute and reset yields",
    "GET /prices": "Get all current prices",
    "POST /updatePrice": "Update price by asset key",
    "POST /updatePriceByAddress": "Update price by token address",
    "POST /updatePrices": "Batch update multiple prices",
    "GET /priceHistory/:assetKey": "Get price history for an asset",
    "POST /verify-holdings": "Verify institution holdings",
    "POST /transfer-assets": "Transfer assets between institution and protocol",
    "POST /mint-erc20": "Validate and record an ERC20 mint intent",
    "GET /holdings/:institutionAddress": "Get institution holdings",
    "GET /protocol-custody": "Get protocol custody",
    "GET /transfer-history": "Get transfer history",
    "GET /simulation-data": "Get detailed simulation data (runs a step in on-demand mode)",
}

def boundary(func: Callable[..., Response]):
    """
    Convert engine errors into status codes.

    ValidationError -> 400, NotFoundError -> 404, anything else is logged
    with its traceback and reported as a bare 500.
    """
    @wraps(func)
    def wrapper(*args, **kwargs) -> Response:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            return 400, {"error": str(e)}
        except NotFoundError as e:
            return 404, {"error": "Asset not found", "detail": str(e)}
        except Exception:
            logger.exception("Unhandled error in custody request")
            return 500, "Server error"

    return wrapper


class CustodyService:
    """In-process request/response front for a CustodyEngine."""
    def __init__(self, engine: Optional[CustodyEngine] = None) -> None:
        self.engine = engine or CustodyEngine()
        self._routes: Dict[Tuple[str, str], Callable[[Dict[str, Any]], Any]] = {
            ("GET", "/"): lambda body: self.describe(),
            ("GET", "/assets"): lambda body: self.engine.list_assets(),
            ("POST", "/getAssetPrice"): lambda body: self.engine.get_asset_price(body.get("assetAddress")),
            ("GET", "/getTotalYield"): lambda body: self.engine.get_total_yield(),
            ("POST", "/distributeYields"): lambda body: self.engine.distribute_yields(),
            ("GET", "/prices"): lambda body: self.engine.prices_overview(),
            ("POST", "/updatePrice"): lambda body: self.engine.update_price(
                body.get("assetKey"), body.get("newPrice")),
            ("POST", "/updatePriceByAddress"): lambda body: self.engine.update_price_by_token(
                body.get("tokenAddress"), body.get("newPrice")),
            ("POST", "/updatePrices"): lambda body: self.engine.update_prices(body.get("updates")),
            ("POST", "/verify-holdings"): lambda body: self.engine.verify_holdings(
                body.get("institutionAddress"), body.get("assets"), body.get("amounts")),
            ("POST", "/transfer-assets"): lambda body: self.engine.transfer_assets(
                body.get("fromInstitution"), body.get("toProtocol"),
                body.get("assets"), body.get("amounts"), body.get("transferId")),
            ("POST", "/mint-erc20"): lambda body: self.engine.mint(
                body.get("protocolAddress"), body.get("assets"), body.get("amounts"), body.get("recipient")),
            ("GET", "/protocol-custody"): lambda body: self.engine.protocol_custody(),
            ("GET", "/transfer-history"): lambda body: self.engine.transfer_history(),
            ("GET", "/simulation-data"): lambda body: self.engine.simulation_data(),
        }
        self._param_routes: List[Tuple[str, str, Callable[[str], Any]]] = [
            ("GET", "/priceHistory/", self.engine.price_history),
            ("GET", "/holdings/", self.engine.holdings),
        ]

    def describe(self) -> Dict[str, Any]:
        engine = self.engine
        return {
            "name": "Mock Custody API",
            "version": VERSION,
            "description": "Simulated custody and asset management API for testing",
            "endpoints": dict(ROUTE_DOCS),
            "simulation": {
                "mode": engine.cfg.simulation_mode,
                "assets": engine.catalog.keys(),
                "currentPrices": engine.prices.prices(),
                "timestamp": engine.clock(),
            },
        }

    @boundary
    def handle(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Response:
        method = method.upper()
        body = payload or {}
        if not isinstance(body, dict):
            raise ValidationError("request body must be a JSON object")

        route = self._routes.get((method, path))
        if route is not None:
            return 200, route(body)

        for route_method, prefix, target in self._param_routes:
            if method == route_method and path.startswith(prefix) and len(path) > len(prefix):
                return 200, target(path[len(prefix):])

        return 404, {"error": f"No route for {method} {path}"}
