import math

import pytest

from custody.config import INSTITUTION_DEMO, SimulationConfig
from custody.core import NotFoundError, ValidationError
from custody.engine import CustodyEngine

SGB_TOKEN = "0xbDcfBEd3188040926bbEaBD70a25cFbE081F428d"
PROTOCOL = "protocol_vault_001"


def test_config_rejects_unknown_mode():
    with pytest.raises(ValueError):
        SimulationConfig(simulation_mode="sometimes")


class TestPrices:
    def test_list_assets_withholds_token(self, engine):
        assets = engine.list_assets()
        assert [a["key"] for a in assets] == ["INR-SGB", "INR-CORP", "INR-MFD"]
        assert all("tokenAddress" not in a and "token_address" not in a for a in assets)
        assert assets[0]["currentPrice"] == 100.0

    def test_manual_price_read_is_pure(self, engine):
        first = engine.get_asset_price(SGB_TOKEN.lower())
        second = engine.get_asset_price(SGB_TOKEN)
        assert first["price"] == second["price"] == 100.0
        assert first["assetKey"] == "INR-SGB"
        assert len(engine.prices.history("INR-SGB")) == 1

    def test_on_demand_price_read_moves_market(self, on_demand_engine):
        on_demand_engine.get_asset_price(SGB_TOKEN)
        for key in on_demand_engine.catalog.keys():
            assert len(on_demand_engine.prices.history(key)) == 2

    def test_price_lookup_errors(self, engine):
        with pytest.raises(ValidationError):
            engine.get_asset_price("")
        with pytest.raises(NotFoundError):
            engine.get_asset_price("0xdeadbeef")

    def test_update_price_round_trip(self, engine, clock):
        clock.advance(1_000)
        result = engine.update_price("INR-CORP", 1234.5)
        assert result["oldPrice"] == 1000.0
        assert result["newPrice"] == 1234.5
        assert engine.prices.current_price("INR-CORP") == 1234.5
        history = engine.price_history("INR-CORP")["history"]
        assert history[-1] == {"price": 1234.5, "timestamp": clock()}

    def test_update_price_validation(self, engine):
        with pytest.raises(ValidationError, match="assetKey and newPrice are required"):
            engine.update_price("INR-CORP", None)
        with pytest.raises(ValidationError, match="Price must be positive"):
            engine.update_price("INR-CORP", 0)
        with pytest.raises(ValidationError):
            engine.update_price("INR-CORP", "12")
        with pytest.raises(NotFoundError):
            engine.update_price("INR-NOPE", 10)

    def test_update_price_by_token(self, engine):
        result = engine.update_price_by_token(SGB_TOKEN, 99.5)
        assert result["assetKey"] == "INR-SGB"
        assert result["tokenAddress"] == SGB_TOKEN
        assert engine.prices.current_price("INR-SGB") == 99.5

    def test_batch_update_reports_errors_per_item(self, engine):
        result = engine.update_prices([
            {"assetKey": "INR-SGB", "newPrice": 101},
            {"assetKey": "INR-NOPE", "newPrice": 5},
            {"assetKey": "INR-MFD", "newPrice": -3},
            {"tokenAddress": SGB_TOKEN, "newPrice": 102},
            "garbage",
        ])
        assert [s["assetKey"] for s in result["successful"]] == ["INR-SGB", "INR-SGB"]
        assert [e["assetKey"] for e in result["errors"]] == ["INR-NOPE", "INR-MFD", None]
        assert engine.prices.current_price("INR-SGB") == 102
        assert engine.prices.current_price("INR-MFD") == 10.0

    def test_batch_update_requires_list(self, engine):
        with pytest.raises(ValidationError):
            engine.update_prices(None)

    def test_history_df(self, engine):
        engine.update_price("INR-MFD", 11)
        df = engine.history_df("INR-MFD")
        assert list(df.columns) == ["price", "timestamp"]
        assert df["price"].tolist() == [10.0, 11.0]


class TestYields:
    def test_scenario_d_through_step(self, engine, clock):
        clock.advance(10_000)
        engine.step()
        expected = 100 * (250 / 10000 / 8760) * 1
        assert engine.yields.accumulated_by_asset()["INR-SGB"] == pytest.approx(expected)

    def test_manual_total_yield_is_pure(self, engine, clock):
        clock.advance(50_000)
        result = engine.get_total_yield()
        assert result["totalYield"] == 0
        assert result["totalAccumulated"] == 0.0

    def test_on_demand_total_yield_accrues(self, on_demand_engine, clock):
        clock.advance(10_000)
        result = on_demand_engine.get_total_yield()
        assert result["totalAccumulated"] > 0
        assert result["totalYield"] == math.floor(result["totalAccumulated"] * 1e18)
        assert set(result["yieldsByAsset"]) == {"INR-SGB", "INR-CORP", "INR-MFD"}
        assert result["simulationData"]["simulationMode"] == "on_demand"

    def test_distribute_is_idempotent(self, engine, clock):
        clock.advance(30_000)
        engine.step()
        first = engine.distribute_yields()
        assert first["distributedTotal"] > 0
        assert first["message"] == "Yields distributed and reset"
        second = engine.distribute_yields()
        assert second["distributedTotal"] == 0.0
        assert second["distributedYield"] == 0


class TestCustody:
    def test_scenario_a(self, engine):
        result = engine.transfer_assets(INSTITUTION_DEMO, PROTOCOL, ["INR-SGB"], [500])
        assert result["success"] is True
        assert engine.holdings(INSTITUTION_DEMO)["holdings"]["INR-SGB"] == 500
        assert engine.protocol_custody()["custody"]["INR-SGB"] == 500
        assert engine.transfer_history()["count"] == 1

    def test_scenario_b(self, engine):
        result = engine.transfer_assets(INSTITUTION_DEMO, PROTOCOL, ["INR-SGB"], [1500])
        assert result["success"] is False
        assert result["results"][0]["error"] == "Insufficient holdings"
        assert engine.holdings(INSTITUTION_DEMO)["holdings"]["INR-SGB"] == 1000
        assert engine.protocol_custody()["custody"]["INR-SGB"] == 0
        history = engine.transfer_history()
        assert history["count"] == 1
        assert history["transfers"][0]["success"] is False

    def test_scenario_c(self, engine):
        engine.transfer_assets(INSTITUTION_DEMO, PROTOCOL, ["INR-CORP"], [50])
        result = engine.mint(PROTOCOL, ["INR-CORP"], [100], "0xrecipient")
        assert result["success"] is False
        assert result["results"][0]["error"] == "Insufficient custody balance"
        assert engine.protocol_custody()["custody"]["INR-CORP"] == 50

    def test_verify_holdings_response(self, engine):
        result = engine.verify_holdings(INSTITUTION_DEMO, ["INR-SGB", "INR-MFD"], [1000, 2001])
        assert result["verified"] is False
        assert result["results"][1] == {
            "asset": "INR-MFD", "requested": 2001, "available": 2000, "sufficient": False,
        }
        assert engine.transfer_history()["count"] == 0

    @pytest.mark.parametrize("assets, amounts", [
        (["INR-SGB"], [1, 2]),
        ("INR-SGB", [1]),
        (["INR-SGB"], [-1]),
        (["INR-SGB"], ["10"]),
        ([""], [1]),
    ])
    def test_malformed_transfer_is_rejected_without_history(self, engine, assets, amounts):
        with pytest.raises(ValidationError):
            engine.transfer_assets(INSTITUTION_DEMO, PROTOCOL, assets, amounts)
        assert engine.transfer_history()["count"] == 0

    def test_missing_fields_message(self, engine):
        with pytest.raises(ValidationError, match="institutionAddress, assets, and amounts are required"):
            engine.verify_holdings(None, ["INR-SGB"], [1])

    def test_transfer_and_mint_events(self, engine):
        engine.transfer_assets(INSTITUTION_DEMO, PROTOCOL, ["INR-SGB", "INR-SGB"], [600, 600])
        engine.mint(PROTOCOL, ["INR-SGB"], [600], INSTITUTION_DEMO)
        types = [e.event_type for e in engine.log.tail(10)]
        assert types == ["TRANSFER_LINE_EXECUTED", "TRANSFER_LINE_FAILED", "MINT_READY"]

    def test_unknown_institution_holdings_are_empty(self, engine):
        assert engine.holdings("0xnobody")["holdings"] == {}


class TestSimulation:
    def test_step_advances_everything(self, engine, clock):
        clock.advance(10_000)
        engine.step(3)
        assert engine.tick == 3
        assert len(engine.prices.history("INR-SGB")) == 4
        df = engine.metrics.market_df()
        assert len(df) == 3 * 4
        assert set(df["asset"]) == {"INR-SGB", "INR-CORP", "INR-MFD"}
        assert len(engine.metrics.ledger_df()) == 4

    def test_same_seed_same_prices(self, clock):
        cfg_a = SimulationConfig(simulation_mode="manual")
        cfg_b = SimulationConfig(simulation_mode="manual")
        a = CustodyEngine(cfg=cfg_a, seed=42, clock=clock)
        b = CustodyEngine(cfg=cfg_b, seed=42, clock=clock)
        a.step(5)
        b.step(5)
        assert a.prices.prices() == b.prices.prices()

    def test_manual_snapshot_is_read_only(self, engine):
        data = engine.simulation_data()
        assert engine.tick == 0
        assert data["marketOverview"]["averagePrice"] == pytest.approx((100 + 1000 + 10) / 3)
        assert set(data["yieldMetrics"]["yieldByTier"]) == {"tier1", "tier2", "tier3"}
        assert len(data["assetDetails"]) == 3
        assert data["simulationSettings"]["simulationMode"] == "manual"

    def test_on_demand_snapshot_steps(self, on_demand_engine):
        data = on_demand_engine.simulation_data()
        assert on_demand_engine.tick == 1
        assert len(data["assetDetails"][0]["priceHistory"]) == 2

    def test_snapshot_market_value_tracks_custody(self, engine):
        engine.transfer_assets(INSTITUTION_DEMO, PROTOCOL, ["INR-CORP"], [10])
        data = engine.simulation_data()
        assert data["marketOverview"]["totalMarketValue"] == pytest.approx(10 * 1000.0)


class TestBookkeeping:
    def test_verify_and_transfer_agree_for_new_institution(self, engine):
        verified = engine.verify_holdings("0xnew", ["INR-SGB"], [0])
        assert verified["results"][0]["sufficient"] is True
        result = engine.transfer_assets("0xnew", PROTOCOL, ["INR-SGB"], [0])
        assert result["results"][0]["success"] is True
        assert result["success"] is True

    def test_metrics_buffers_are_bounded(self, clock):
        cfg = SimulationConfig(simulation_mode="manual", metrics_maxlen=6)
        engine = CustodyEngine(cfg=cfg, seed=1, clock=clock)
        engine.step(10)
        df = engine.metrics.market_df()
        assert len(df) == 6
        assert df["tick"].tolist() == [9, 9, 9, 10, 10, 10]
        assert len(engine.metrics.ledger_df()) == 6

    def test_market_series_pivots_by_asset(self, engine):
        engine.step(2)
        series = engine.metrics.market_series("price")
        assert list(series.index) == [0, 1, 2]
        assert sorted(series.columns) == ["INR-CORP", "INR-MFD", "INR-SGB"]

    def test_set_simulation_mode(self, engine):
        engine.set_simulation_mode("on_demand")
        assert engine.cfg.on_demand
        engine.get_asset_price(SGB_TOKEN)
        assert len(engine.prices.history("INR-SGB")) == 2
        with pytest.raises(ValidationError):
            engine.set_simulation_mode("sometimes")
        assert engine.cfg.simulation_mode == "on_demand"
