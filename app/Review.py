from __future__ import annotations

import pandas as pd
import plotly.express as px
import streamlit as st

try:
    from app.shared import (
        format_currency,
        format_hectares,
        load_diagnostics_cached,
        load_summaries_cached,
        numeric_columns,
    )
except ModuleNotFoundError:
    from shared import (
        format_currency,
        format_hectares,
        load_diagnostics_cached,
        load_summaries_cached,
        numeric_columns,
    )

from reefetl.reshape import GLOBAL_LABEL

st.set_page_config(
    page_title="Coral Reef Project Summaries",
    layout="wide",
    initial_sidebar_state="collapsed",
)


def _global_value(frame: pd.DataFrame, key: str, column: str) -> float | None:
    row = frame.loc[frame[key].astype(str).eq(GLOBAL_LABEL), column]
    if row.empty:
        return None
    return float(row.iloc[0])


def render_summary(frame: pd.DataFrame, key: str, section: str) -> None:
    if frame.empty:
        st.info("No summary rows found. Run `python -m reefetl.pipeline` first.")
        return

    metrics = numeric_columns(frame)
    if metrics:
        metric = st.selectbox("Metric", metrics, key=f"{section}_metric")
        chart_data = frame.loc[~frame[key].astype(str).eq(GLOBAL_LABEL), [key, metric]]
        figure = px.bar(chart_data, x=key, y=metric, title=f"{metric} by {key}")
        figure.update_layout(xaxis_title=None, margin={"t": 48, "b": 24})
        st.plotly_chart(figure, use_container_width=True)

    st.dataframe(frame, hide_index=True, use_container_width=True)


by_country, by_sector, source = load_summaries_cached()
diagnostics = load_diagnostics_cached()

st.title("Coral Reef Project Summaries")
st.caption(f"Data source: {source}")

if not by_country.empty:
    kpis = st.columns(3)
    area = _global_value(by_country, "Country", "F1 Secured (ha)") if "F1 Secured (ha)" in by_country else None
    invested = (
        _global_value(by_country, "Country", "Investments Secured (USD)")
        if "Investments Secured (USD)" in by_country
        else None
    )
    kpis[0].metric("Area under management", format_hectares(area))
    kpis[1].metric("Investments secured", format_currency(invested))
    kpis[2].metric("Data quality warnings", diagnostics.get("warning_count", 0))

country_tab, sector_tab, quality_tab = st.tabs(["By country", "By sector", "Data quality"])

with country_tab:
    render_summary(by_country, "Country", "country")

with sector_tab:
    render_summary(by_sector, "Sector", "sector")

with quality_tab:
    if diagnostics.get("note"):
        st.info(diagnostics["note"])
    warnings = pd.DataFrame(diagnostics.get("warnings", []))
    if warnings.empty:
        st.success("No data quality warnings.")
    else:
        for category, count in diagnostics.get("warning_counts", {}).items():
            st.write(f"**{category}**: {count}")
        st.dataframe(warnings, hide_index=True, use_container_width=True)
