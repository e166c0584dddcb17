"""
tw_components.py – HTML helpers cho trang import (inline CSS)
==============================================================
Các hàm hiển thị trả về chuỗi HTML để render qua
st.markdown(unsafe_allow_html=True); riêng override_streamlit_widgets() gọi
st.markdown trực tiếp.
"""

import html
from typing import List, Optional

import streamlit as st

from cpbq_import.schema import ML2_NGOAI_TRU, ML2_NOI_TRU
from cpbq_import.summary import GRAND_ROW_LABEL, TOTAL_LABEL

FONT = "font-family:'Inter',sans-serif;"


def override_streamlit_widgets():
    """CSS cho font, file uploader, nút bấm và expander. Gọi 1 lần khi khởi động."""
    st.markdown("""
    <link href="https://fonts.googleapis.com/css2?family=Inter:wght@400;500;600;700&display=swap" rel="stylesheet">
    <style>
    html, body, [class*="st-"] { font-family: 'Inter', system-ui, sans-serif; }
    #MainMenu { visibility: hidden; }
    .stMainBlockContainer { max-width: 1200px; }

    [data-testid="stSidebar"] {
        background: linear-gradient(180deg, #2d3a5c 0%, #3b4874 100%);
    }
    [data-testid="stSidebar"] .stMarkdown p,
    [data-testid="stSidebar"] .stMarkdown h3,
    [data-testid="stSidebar"] label { color: #cbd5e1 !important; }
    [data-testid="stSidebar"] .stButton > button {
        width: 100% !important; text-align: left; border-radius: 0;
        border: none !important; padding: 0.75rem 1.2rem;
    }
    [data-testid="stSidebar"] .stButton > button[kind="secondary"] {
        background: transparent !important; color: #cbd5e1 !important;
    }
    [data-testid="stSidebar"] .stButton > button[kind="primary"] {
        background: rgba(99,130,202,0.45) !important; color: #ffffff !important;
    }

    [data-testid="stFileUploader"] section {
        border: 2px dashed rgba(51,65,85,0.8) !important;
        border-radius: 0.75rem !important;
    }
    [data-testid="stFileUploader"] section:hover {
        border-color: rgba(59,130,246,0.5) !important;
    }
    .stMainBlockContainer .stButton > button[kind="primary"] {
        background: linear-gradient(135deg, #3b82f6, #2563eb) !important;
        color: white !important; border: none !important;
        border-radius: 0.5rem !important; font-weight: 600;
    }
    [data-testid="stExpander"] { border-radius: 0.75rem !important; }
    [data-testid="stDataFrame"], .stDataFrame { border-radius: 0.75rem !important; overflow: hidden; }
    </style>
    """, unsafe_allow_html=True)


# ═══════════════════════════════════════════════════════════════════════════════
# DISPLAY COMPONENTS
# ═══════════════════════════════════════════════════════════════════════════════

def page_header(title: str, subtitle: str = "", icon: str = "📥") -> str:
    """Gradient page header card."""
    sub_html = (
        f'<p style="margin:0.3rem 0 0 0;font-size:0.9rem;color:rgba(219,234,254,0.75);">{subtitle}</p>'
        if subtitle else ""
    )
    return f"""
    <div style="background:linear-gradient(135deg,#0ea5e9,#2563eb);border-radius:0.75rem;
                padding:1.5rem 2rem;margin-bottom:1.5rem;color:white;">
        <h1 style="margin:0;font-size:1.8rem;font-weight:700;color:white;{FONT}">{icon} {title}</h1>
        {sub_html}
    </div>
    """


def section_title(text: str, icon: str = "📋") -> str:
    return f"""
    <div style="display:flex;align-items:center;gap:0.5rem;margin:1.5rem 0 1rem 0;">
        <div style="width:3px;height:1.5rem;background:#3b82f6;border-radius:2px;"></div>
        <h3 style="margin:0;font-size:1.1rem;font-weight:600;{FONT}">{icon} {text}</h3>
    </div>
    """


_CARD_COLORS = {
    "blue":   ("rgba(59,130,246,0.12)", "rgba(59,130,246,0.25)", "#3b82f6"),
    "green":  ("rgba(16,185,129,0.12)", "rgba(16,185,129,0.25)", "#10b981"),
    "orange": ("rgba(249,115,22,0.12)", "rgba(249,115,22,0.25)", "#f97316"),
    "red":    ("rgba(239,68,68,0.12)",  "rgba(239,68,68,0.25)",  "#ef4444"),
    "purple": ("rgba(139,92,246,0.12)", "rgba(139,92,246,0.25)", "#8b5cf6"),
}


def metric_card(label: str, value: str, icon: str = "📊", color: str = "blue") -> str:
    bg, border, text = _CARD_COLORS.get(color, _CARD_COLORS["blue"])
    return f"""
    <div style="background:{bg};border:1px solid {border};border-radius:0.75rem;padding:1.25rem;">
        <p style="margin:0 0 0.5rem 0;font-size:0.7rem;font-weight:600;color:#94a3b8;
                  text-transform:uppercase;letter-spacing:0.05em;{FONT}">{icon} {label}</p>
        <p style="margin:0;font-size:1.5rem;font-weight:700;color:{text};{FONT}">{value}</p>
    </div>
    """


def metric_row(cards: List[str]) -> str:
    """Grid of metric cards."""
    return f"""
    <div style="display:grid;grid-template-columns:repeat({len(cards)},1fr);gap:1rem;margin-bottom:1.5rem;">
        {''.join(cards)}
    </div>
    """


_BANNER_STYLES = {
    "info":    ("rgba(59,130,246,0.08)", "rgba(59,130,246,0.25)", "#3b82f6", "ℹ️"),
    "success": ("rgba(16,185,129,0.08)", "rgba(16,185,129,0.25)", "#059669", "✅"),
    "warning": ("rgba(245,158,11,0.08)", "rgba(245,158,11,0.25)", "#d97706", "⚠️"),
    "error":   ("rgba(239,68,68,0.08)",  "rgba(239,68,68,0.25)",  "#dc2626", "❌"),
}


def info_banner(text: str, type: str = "info") -> str:
    """Info/warning/success/error banner. `text` có thể chứa HTML."""
    bg, border, color, emoji = _BANNER_STYLES.get(type, _BANNER_STYLES["info"])
    return f"""
    <div style="background:{bg};border:1px solid {border};border-radius:0.5rem;
                padding:0.75rem 1rem;margin-bottom:1rem;">
        <p style="margin:0;color:{color};font-size:0.875rem;font-weight:500;{FONT}">{emoji} {text}</p>
    </div>
    """


def data_table(headers: List[str], rows: List[List[str]],
               col_aligns: Optional[List[str]] = None,
               highlight_last_row: bool = False) -> str:
    """
    Bảng HTML đơn giản. `rows` đã được format sẵn thành chuỗi.
    col_aligns: 'l', 'c' hoặc 'r' cho từng cột (mặc định: cột đầu giữa, còn lại phải).
    """
    if col_aligns is None:
        col_aligns = ["c"] + ["r"] * (len(headers) - 1)
    align_map = {"l": "left", "c": "center", "r": "right"}

    def align(i):
        return align_map.get(col_aligns[i] if i < len(col_aligns) else "r", "right")

    head = "".join(
        f'<th style="padding:10px 14px;text-align:{align(i)};font-size:0.75rem;font-weight:600;'
        f'text-transform:uppercase;color:#cbd5e1;background:rgba(30,41,59,0.9);">{h}</th>'
        for i, h in enumerate(headers)
    )
    body = ""
    for ri, row in enumerate(rows):
        is_total = highlight_last_row and ri == len(rows) - 1
        weight = "font-weight:700;" if is_total else ""
        bg = "rgba(51,65,85,0.15)" if is_total else ("rgba(30,41,59,0.04)" if ri % 2 else "transparent")
        cells = "".join(
            f'<td style="padding:8px 14px;text-align:{align(ci)};font-size:0.875rem;'
            f'border-bottom:1px solid rgba(51,65,85,0.2);{weight}">{cell}</td>'
            for ci, cell in enumerate(row)
        )
        body += f'<tr style="background:{bg};">{cells}</tr>'

    return f"""
    <div style="border-radius:0.75rem;border:1px solid rgba(51,65,85,0.3);overflow:hidden;margin-bottom:1.5rem;">
        <table style="width:100%;border-collapse:collapse;{FONT}">
            <thead><tr>{head}</tr></thead>
            <tbody>{body}</tbody>
        </table>
    </div>
    """


def divider() -> str:
    return '<hr style="margin:1.5rem 0;border:none;border-top:1px solid rgba(51,65,85,0.3);">'


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION PIVOT
# ═══════════════════════════════════════════════════════════════════════════════

def format_value(val, metric: str = "count") -> str:
    """0 / rỗng → ô trống; số lượt dạng nguyên, số tiền làm tròn đồng."""
    if val is None or val == 0:
        return ""
    if metric == "count":
        return f"{int(val):,}"
    return f"{val:,.0f}"


def pivot_table(pivot, section: str = "valid") -> str:
    """
    Bảng đối soát kỳ × (Ngoại trú / Nội trú) × CSKCB, header 2 tầng.
    `pivot` là cpbq_import.summary.ReconciliationPivot.
    """
    frame = pivot.to_frame(section)
    out_cols = [c for c in frame.columns if c.startswith(f"{ML2_NGOAI_TRU}|")]
    in_cols = [c for c in frame.columns if c.startswith(f"{ML2_NOI_TRU}|")]

    th = f"padding:10px 14px;text-align:center;font-size:0.75rem;font-weight:600;text-transform:uppercase;{FONT}"
    td = "padding:8px 14px;font-size:0.875rem;border-bottom:1px solid rgba(51,65,85,0.2);"

    # Row 1: group headers
    head = f'<th style="{th}background:rgba(30,41,59,0.9);color:#e2e8f0;" rowspan="2">Kỳ</th>'
    head += (f'<th style="{th}background:rgba(37,99,235,0.8);color:white;" '
             f'colspan="{len(out_cols)}">💵 {ML2_NGOAI_TRU}</th>')
    head += (f'<th style="{th}background:rgba(234,88,12,0.8);color:white;" '
             f'colspan="{len(in_cols)}">🏥 {ML2_NOI_TRU}</th>')
    head += f'<th style="{th}background:rgba(30,41,59,0.9);color:#e2e8f0;" rowspan="2">{TOTAL_LABEL}</th>'

    # Row 2: facility sub-headers
    sub = ""
    for cols, bg in ((out_cols, "rgba(30,64,175,0.3)"), (in_cols, "rgba(154,52,18,0.3)")):
        for col in cols:
            label = html.escape(col.split("|", 1)[1])
            fw = "font-weight:700;" if label == "Tổng" else ""
            sub += f'<th style="{th}background:{bg};color:#e2e8f0;{fw}">{label}</th>'

    body = ""
    for idx, row in frame.iterrows():
        is_total = row["Kỳ"] == GRAND_ROW_LABEL
        bg = "rgba(51,65,85,0.15)" if is_total else ("rgba(30,41,59,0.04)" if idx % 2 else "transparent")
        fw = "font-weight:700;" if is_total else ""
        cells = f'<td style="{td}text-align:center;font-weight:600;">{row["Kỳ"]}</td>'
        for col in out_cols + in_cols + [TOTAL_LABEL]:
            extra = "font-weight:600;" if col.endswith("|Tổng") or col == TOTAL_LABEL else ""
            cells += f'<td style="{td}text-align:right;{fw}{extra}">{format_value(row[col], pivot.metric)}</td>'
        body += f'<tr style="background:{bg};">{cells}</tr>'

    return f"""
    <div style="border-radius:0.75rem;border:1px solid rgba(51,65,85,0.3);overflow:auto;margin-bottom:1.5rem;">
    <table style="width:100%;border-collapse:collapse;{FONT}">
        <thead><tr>{head}</tr><tr>{sub}</tr></thead>
        <tbody>{body}</tbody>
    </table>
    </div>
    """
