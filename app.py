#!/usr/bin/env python3
"""
app.py - CPBQ Import
=====================
Sử dụng: source venv/bin/activate && streamlit run app.py

Giao diện import dữ liệu thanh toán BHYT:
  - Import: Upload Excel → kiểm tra → đối soát → tải lên BigQuery
"""

import logging

import streamlit as st

import config
from tw_components import override_streamlit_widgets

# ─── Page Config ──────────────────────────────────────────────────────────────

st.set_page_config(
    page_title="CPBQ Import",
    page_icon="🏥",
    layout="wide",
    initial_sidebar_state="expanded",
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ─── Session State ────────────────────────────────────────────────────────────

if "current_page" not in st.session_state:
    st.session_state.current_page = "importer"

override_streamlit_widgets()

# ─── Sidebar Navigation (Page Menu) ──────────────────────────────────────────

PAGES = [
    {"key": "importer", "label": "📥  Import dữ liệu"},
]

st.sidebar.markdown("### 🏥 CPBQ")
st.sidebar.markdown("---")

for p in PAGES:
    is_active = st.session_state.current_page == p["key"]
    if st.sidebar.button(
        p["label"],
        key=f"nav_{p['key']}",
        use_container_width=True,
        type="primary" if is_active else "secondary",
    ):
        st.session_state.current_page = p["key"]
        st.rerun()

st.sidebar.markdown("---")
st.sidebar.caption(f"{config.FULL_TABLE_ID} · {config.LOCATION}")

# ─── Page Routing ─────────────────────────────────────────────────────────────

if st.session_state.current_page == "importer":
    from views.importer import render
    render()
