import json
import time
import streamlit as st
import pandas as pd

from custody.config import SimulationConfig, INSTITUTION_DEMO
from custody.engine import CustodyEngine
from custody.service import CustodyService

st.set_page_config(page_title="Mock Custody Simulator", layout="wide")


def get_service() -> CustodyService:
    if "service" not in st.session_state:
        cfg = SimulationConfig()
        st.session_state.cfg = cfg
        st.session_state.seed = 1
        st.session_state.service = CustodyService(CustodyEngine(cfg=cfg, seed=st.session_state.seed))
    return st.session_state.service


def reset_service(reset_config: bool = False) -> None:
    if reset_config:
        cfg = SimulationConfig()
        st.session_state.cfg = cfg
    else:
        cfg = st.session_state.get("cfg", SimulationConfig())
    seed = int(st.session_state.get("seed", 1))
    st.session_state.service = CustodyService(CustodyEngine(cfg=cfg, seed=seed))


service = get_service()
engine = service.engine

st.title("Mock Custody Simulator")
st.caption(
    f"Mode: {engine.cfg.simulation_mode} | 1 accrual tick = {engine.cfg.tick_duration_ms / 1000:g}s "
    f"= 1/{engine.cfg.periods_per_year} year."
)

def _fmt(value: float) -> str:
    return f"{float(value):,.2f}"

def _render_kpi_grid(kpis, columns: int = 4) -> None:
    for idx in range(0, len(kpis), columns):
        row = kpis[idx: idx + columns]
        cols = st.columns(columns)
        for col, (label, value) in zip(cols, row):
            col.metric(label, value)

def _format_table_numbers(df: pd.DataFrame) -> pd.DataFrame:
    formatted = df.copy()
    numeric_cols = formatted.select_dtypes(include=["number"]).columns
    if len(numeric_cols) == 0:
        return formatted
    formatted[numeric_cols] = formatted[numeric_cols].map(
        lambda value: f"{value:,.2f}" if pd.notnull(value) else ""
    )
    return formatted

def _format_event_meta(meta) -> str:
    if meta is None:
        return ""
    if isinstance(meta, str):
        return meta
    try:
        return json.dumps(meta, sort_keys=True)
    except TypeError:
        return str(meta)

def _parse_list(text: str, value_type: type) -> list:
    values = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        values.append(value_type(part) if value_type is str else value_type(float(part)))
    return values

def _show_response(status: int, body) -> None:
    if status == 200:
        st.success(f"HTTP {status}")
    else:
        st.error(f"HTTP {status}")
    st.json(body)

with st.sidebar:
    st.header("Sim Controls")

    if st.button("Restart simulation"):
        reset_service(reset_config=True)
        service = st.session_state.service
        engine = service.engine
    st.number_input("Random seed", min_value=1, max_value=100000, key="seed")

    mode = st.selectbox(
        "Simulation mode",
        ["on_demand", "manual"],
        index=0 if engine.cfg.on_demand else 1,
        help="on_demand: price and yield reads move the simulation. manual: only steps do.",
    )
    engine.set_simulation_mode(mode)

    run_ticks = st.slider("Ticks to run", min_value=1, max_value=200, value=10)
    c1, c2 = st.columns(2)
    if c1.button("Step 1 tick"):
        engine.step(1)
    if c2.button("Run N ticks"):
        start_ts = time.time()
        progress_bar = st.progress(0.0, text="Run progress: 0%")
        for idx in range(int(run_ticks)):
            engine.step(1)
            progress_bar.progress((idx + 1) / run_ticks, text=f"Run progress: {(idx + 1) / run_ticks:.0%}")
        st.caption(f"Ran {run_ticks} ticks in {time.time() - start_ts:0.2f}s")
    st.caption(f"Current tick: {engine.tick}")

    st.subheader("Yield")
    if st.button("Distribute yields"):
        st.session_state.last_response = service.handle("POST", "/distributeYields")

tab_overview, tab_prices, tab_custody, tab_transfers, tab_events = st.tabs(
    ["Overview", "Prices", "Custody", "Transfers & Mints", "Events"]
)

with tab_overview:
    custody = engine.ledger.protocol_custody()
    prices = engine.prices.prices()
    _render_kpi_grid([
        ("Accumulated yield", f"{engine.yields.total_accumulated():.6f}"),
        ("Custody value", _fmt(sum(prices[k] * custody.get(k, 0) for k in prices))),
        ("Transfers", str(engine.history.count())),
        ("Mint intents", str(engine.minter.total)),
    ])
    assets_df = pd.DataFrame(engine.list_assets())
    st.dataframe(_format_table_numbers(assets_df), use_container_width=True)

    yield_series = engine.metrics.market_series("accumulated_yield")
    if yield_series.empty:
        st.info("No market rows yet. Step the simulation.")
    else:
        st.line_chart(yield_series)
        st.line_chart(engine.metrics.market_series("yield_rate"))

with tab_prices:
    asset_key = st.selectbox("Asset", engine.catalog.keys())
    hist = engine.history_df(asset_key)
    if not hist.empty:
        st.line_chart(hist.reset_index(drop=True)[["price"]])
    c1, c2 = st.columns(2)
    new_price = c1.number_input("New price", min_value=0.0, value=float(engine.prices.current_price(asset_key)))
    if c2.button("Update price"):
        st.session_state.last_response = service.handle(
            "POST", "/updatePrice", {"assetKey": asset_key, "newPrice": new_price}
        )
    if st.button("Quote by token address"):
        token = engine.catalog.get(asset_key).token_address
        st.session_state.last_response = service.handle("POST", "/getAssetPrice", {"assetAddress": token})

with tab_custody:
    institution = st.text_input("Institution address", value=INSTITUTION_DEMO)
    c1, c2 = st.columns(2)
    with c1:
        st.write("**Institution holdings**")
        st.dataframe(pd.DataFrame(
            [{"asset": a, "amount": amt} for a, amt in engine.ledger.holdings_of(institution).items()]
        ), use_container_width=True)
    with c2:
        st.write("**Protocol custody**")
        st.dataframe(pd.DataFrame(
            [{"asset": a, "amount": amt} for a, amt in engine.ledger.protocol_custody().items()]
        ), use_container_width=True)

with tab_transfers:
    institution = st.text_input("From institution", value=INSTITUTION_DEMO, key="xfer_inst")
    assets_text = st.text_input("Assets (comma-separated)", value="INR-SGB")
    amounts_text = st.text_input("Amounts (comma-separated)", value="100")
    transfer_id = st.text_input("Transfer id (optional)", value="")
    try:
        assets = _parse_list(assets_text, str)
        amounts = _parse_list(amounts_text, float)
    except ValueError:
        st.warning("Amounts must be numeric.")
        assets, amounts = [], []

    c1, c2, c3 = st.columns(3)
    if c1.button("Verify holdings"):
        st.session_state.last_response = service.handle("POST", "/verify-holdings", {
            "institutionAddress": institution, "assets": assets, "amounts": amounts,
        })
    if c2.button("Transfer in"):
        st.session_state.last_response = service.handle("POST", "/transfer-assets", {
            "fromInstitution": institution, "toProtocol": engine.cfg.protocol_id,
            "assets": assets, "amounts": amounts, "transferId": transfer_id or None,
        })
    if c3.button("Mint"):
        st.session_state.last_response = service.handle("POST", "/mint-erc20", {
            "protocolAddress": engine.cfg.protocol_id, "assets": assets, "amounts": amounts,
            "recipient": institution,
        })

    rows = []
    for record in engine.history.tail(200):
        for line in record.lines:
            rows.append({
                "transfer_id": record.transfer_id,
                "timestamp": record.timestamp,
                "from": record.from_institution,
                "asset": line.asset,
                "amount": line.amount,
                "success": line.success,
                "error": line.error,
            })
    st.write("**Transfer history**")
    if rows:
        st.dataframe(pd.DataFrame(rows).iloc[::-1], use_container_width=True)
    else:
        st.info("No transfers yet.")

with tab_events:
    st.subheader("Event Log (latest 300)")
    tail = engine.log.tail(300)
    if not tail:
        st.info("No events yet.")
    else:
        df = pd.DataFrame([e.__dict__ for e in tail]).iloc[::-1]
        if "meta" in df.columns:
            df["meta"] = df["meta"].apply(_format_event_meta)
        st.dataframe(df, use_container_width=True)

if "last_response" in st.session_state:
    st.divider()
    st.subheader("Last response")
    _show_response(*st.session_state.last_response)
