"""
views/importer.py - Trang Import dữ liệu Excel lên BigQuery
============================================================
Upload file → chọn sheet → kiểm tra dữ liệu → check trùng → bảng đối soát
→ chọn dòng → tải lên (dữ liệu mới) hoặc thay thế (hồ sơ trùng).
"""

import streamlit as st
import pandas as pd

import config
from bq_store import connect
from cpbq_import import FormatError, NoCompatibleSheetError
from cpbq_import.commit import MODE_NEW, MODE_OVERWRITE
from cpbq_import.pipeline import commit_selection, open_workbook, prepare_import, select_candidate
from cpbq_import.schema import REQUIRED_COLS, ROW_KEY_COLS, SCHEMA_COLS
from cpbq_import.summary import SECTION_LABELS
from tw_components import (
    page_header, section_title, metric_card, metric_row,
    data_table, info_banner, divider, pivot_table,
)

METRIC_OPTIONS = {"Số lượt KCB": "count", "Tổng chi phí (VNĐ)": "t_tongchi"}

DISPLAY_COLS = ROW_KEY_COLS + ["ho_ten", "nam_qt", "thang_qt", "ma_khoa", "t_tongchi", "t_bhtt"]


@st.cache_resource
def _get_store():
    """BigQueryStore dùng chung cho cả phiên chạy app."""
    store = connect()
    store.ensure_dataset()
    store.ensure_table()
    return store


@st.cache_data(ttl=300, show_spinner=False)
def _load_preview(data: bytes, filename: str, sheet_name: str, metric: str, _store):
    xls, candidates = open_workbook(data, scan_rows=config.HEADER_SCAN_ROWS)
    candidate = select_candidate(candidates, sheet_name)
    return prepare_import(
        xls, candidate, filename, store=_store,
        lookup_batch_size=config.LOOKUP_BATCH_SIZE, metric=metric,
    )


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _code(text: str) -> str:
    return f"<code>{text}</code>"


def _render_no_sheet(err: NoCompatibleSheetError):
    st.markdown(info_banner(
        f"{err}<br><small>Cần đủ <strong>{len(REQUIRED_COLS)} cột bắt buộc</strong>: "
        f"{', '.join(_code(c) for c in REQUIRED_COLS)}</small>",
        "error"
    ), unsafe_allow_html=True)
    if err.scans:
        with st.expander("📋 Xem danh sách sheet trong file"):
            for scan in err.scans:
                if scan.error:
                    st.markdown(f"**{scan.sheet_name}** — ❌ Không đọc được: {scan.error}")
                else:
                    st.markdown(f"**{scan.sheet_name}** — thiếu: `{'`, `'.join(scan.missing_required)}`")


def _selection_editor(df: pd.DataFrame, key: str, default: bool) -> pd.DataFrame:
    """Bảng có cột checkbox 'Chọn'; trả về các dòng (của df gốc) được chọn."""
    view = df.reindex(columns=DISPLAY_COLS).copy()
    view.insert(0, "chon", default)
    edited = st.data_editor(
        view,
        key=key,
        hide_index=True,
        use_container_width=True,
        column_config={"chon": st.column_config.CheckboxColumn("Chọn", default=default)},
        disabled=[c for c in view.columns if c != "chon"],
    )
    chosen = edited.index[edited["chon"].fillna(False).astype(bool)]
    return df.loc[chosen]


def _commit(store, rows: pd.DataFrame, mode: str):
    label = "Đang tải lên" if mode == MODE_NEW else "Đang thay thế"
    with st.spinner(f"⏳ {label} {len(rows):,} dòng lên BigQuery..."):
        report = commit_selection(
            store, rows, mode,
            batch_size=config.COMMIT_BATCH_SIZE,
            lookup_batch_size=config.LOOKUP_BATCH_SIZE,
        )
    st.session_state[f"_import_done_{mode}"] = report
    _load_preview.clear()
    st.rerun()


def _render_commit_report(mode: str):
    report = st.session_state.get(f"_import_done_{mode}")
    if report is None:
        return False
    text = f"Đã tải lên <strong>{report.uploaded:,}</strong> dòng"
    if report.failed:
        text += f", <strong>{report.failed:,}</strong> dòng lỗi ({report.failed_batches} batch)"
    if report.skipped_duplicates:
        text += f", bỏ qua <strong>{report.skipped_duplicates:,}</strong> dòng vừa phát hiện trùng"
    st.markdown(info_banner(text + ".", "warning" if report.failed else "success"), unsafe_allow_html=True)
    return True


def _render_new_section(store, new_df: pd.DataFrame):
    # Sau khi tải lên, các dòng vừa ghi được check lại là trùng → new_df rỗng
    if new_df.empty and f"_import_done_{MODE_NEW}" not in st.session_state:
        return
    st.markdown(divider(), unsafe_allow_html=True)
    st.markdown(section_title(f"Dữ liệu mới — {len(new_df):,} record", "✅"), unsafe_allow_html=True)
    done = _render_commit_report(MODE_NEW)
    if new_df.empty:
        return
    selected = _selection_editor(new_df, "_import_new_editor", default=True)
    if st.button(
        f"✅ Xác nhận tải lên ({len(selected):,} dòng)", type="primary",
        key="_import_upload_new_btn",
        disabled=done or selected.empty,
    ):
        _commit(store, selected, MODE_NEW)


def _render_duplicate_section(store, dup_df: pd.DataFrame):
    if dup_df.empty and f"_import_done_{MODE_OVERWRITE}" not in st.session_state:
        return
    st.markdown(divider(), unsafe_allow_html=True)
    st.markdown(section_title(f"Dữ liệu trùng — {len(dup_df):,} record", "🔄"), unsafe_allow_html=True)
    done = _render_commit_report(MODE_OVERWRITE)
    if dup_df.empty:
        return
    st.markdown(info_banner(
        f"<strong>{len(dup_df):,}</strong> dòng đã tồn tại trên BigQuery. "
        f"Chọn các dòng cần thay thế: hồ sơ cũ cùng key sẽ bị xóa trước khi ghi.",
        "warning"
    ), unsafe_allow_html=True)
    selected = _selection_editor(dup_df, "_import_dup_editor", default=False)
    if st.button(
        f"🔄 Xác nhận thay thế hồ sơ ({len(selected):,} dòng)", type="secondary",
        key="_import_replace_btn",
        disabled=done or selected.empty,
    ):
        _commit(store, selected, MODE_OVERWRITE)


# ─── Main render ──────────────────────────────────────────────────────────────

def render():
    st.markdown(page_header(
        "Import dữ liệu",
        "Kiểm tra · Đối soát · Tải dữ liệu thanh toán BHYT lên BigQuery",
        "📥"
    ), unsafe_allow_html=True)

    st.markdown(info_banner(
        f"Target: {_code(config.FULL_TABLE_ID)} · Composite key: "
        f"{' + '.join(_code(c) for c in ROW_KEY_COLS)}",
        "info"
    ), unsafe_allow_html=True)

    # ── Step 1: File uploader ──
    uploaded_file = st.file_uploader(
        "Chọn file Excel (.xlsx, .xls)",
        type=["xlsx", "xls"],
        key="_import_file_uploader",
    )
    if uploaded_file is None:
        st.markdown(info_banner("Chọn file Excel để bắt đầu.", "info"), unsafe_allow_html=True)
        return

    filename = uploaded_file.name
    data = uploaded_file.getvalue()

    # Reset upload flags when a new file is uploaded
    file_sig = (filename, len(data))
    if st.session_state.get("_import_last_file") != file_sig:
        st.session_state["_import_last_file"] = file_sig
        st.session_state.pop(f"_import_done_{MODE_NEW}", None)
        st.session_state.pop(f"_import_done_{MODE_OVERWRITE}", None)

    # ── Step 2: Sheet detection ──
    st.markdown(section_title("Phát hiện sheet dữ liệu", "🔍"), unsafe_allow_html=True)
    try:
        with st.spinner("⏳ Đang quét các sheet..."):
            _, candidates = open_workbook(data, scan_rows=config.HEADER_SCAN_ROWS)
    except FormatError as e:
        st.markdown(info_banner(str(e), "error"), unsafe_allow_html=True)
        return
    except NoCompatibleSheetError as e:
        _render_no_sheet(e)
        return

    selected_sheet = st.selectbox(
        "📄 Chọn sheet:",
        [c.sheet_name for c in candidates],
        key="_import_sheet_select",
    )
    sel_info = select_candidate(candidates, selected_sheet)
    st.markdown(info_banner(
        f"Sheet <strong>{sel_info.sheet_name}</strong>: "
        f"{len(sel_info.matched_cols)}/{len(SCHEMA_COLS)} cột khớp, header ở dòng {sel_info.header_row + 1}",
        "success"
    ), unsafe_allow_html=True)
    if sel_info.extra_cols:
        with st.expander(f"⚠️ {len(sel_info.extra_cols)} cột thừa (bỏ qua)"):
            st.code(", ".join(sel_info.extra_cols))

    metric_label = st.selectbox("📈 Chỉ số đối soát", list(METRIC_OPTIONS), key="_import_metric")
    metric = METRIC_OPTIONS[metric_label]

    # ── Step 3: Validate + duplicate check ──
    st.markdown(divider(), unsafe_allow_html=True)
    st.markdown(section_title("Đọc & kiểm tra dữ liệu", "📖"), unsafe_allow_html=True)
    try:
        store = _get_store()
    except Exception as e:
        st.markdown(info_banner(f"Không kết nối được BigQuery: {e}", "error"), unsafe_allow_html=True)
        return

    try:
        with st.spinner("⏳ Đang chuẩn hóa, kiểm tra và so sánh với BigQuery..."):
            preview = _load_preview(data, filename, selected_sheet, metric, store)
    except Exception as e:
        st.error(f"❌ Lỗi đọc dữ liệu: {e}")
        return

    acc = preview.accounting()
    st.markdown(metric_row([
        metric_card("Tổng dòng", f"{acc['total']:,}", "📄", "blue"),
        metric_card("Không hợp lệ", f"{acc['invalid']:,}", "🚫", "red"),
        metric_card("Mới", f"{acc['new']:,}", "✅", "green"),
        metric_card("Trùng", f"{acc['duplicate']:,}", "🔄", "orange"),
    ]), unsafe_allow_html=True)

    if acc["invalid"]:
        issue_details = ", ".join(f"{_code(col)}: {n:,} dòng" for col, n in preview.validation.issue_list())
        st.markdown(info_banner(
            f"Phát hiện <strong>{acc['invalid']:,}</strong> dòng không hợp lệ "
            f"(thiếu dữ liệu hoặc sai định dạng). Đã loại khỏi tập dữ liệu upload.<br>"
            f"<small>Chi tiết: {issue_details}</small>",
            "warning"
        ), unsafe_allow_html=True)
        with st.expander(f"🚫 Xem {acc['invalid']:,} dòng không hợp lệ"):
            st.dataframe(preview.validation.invalid, use_container_width=True)

    for w in preview.warnings:
        st.markdown(info_banner(w, "warning"), unsafe_allow_html=True)

    if not acc["valid"]:
        st.markdown(info_banner("Không còn dữ liệu hợp lệ sau khi kiểm tra.", "error"), unsafe_allow_html=True)
        return

    # ── Step 4: Reconciliation ──
    st.markdown(divider(), unsafe_allow_html=True)
    st.markdown(section_title("Bảng đối soát", "📊"), unsafe_allow_html=True)

    summary = preview.period_summary()
    st.markdown(data_table(
        ["Kỳ", "Mã CSKCB", "Số dòng", "Trùng", "Tổng chi"],
        [
            [
                preview.pivot.period_label((r.nam_qt, r.thang_qt)) if pd.notna(r.nam_qt) and pd.notna(r.thang_qt) else "?",
                preview.lookups.facilities.get(r.ma_cskcb, r.ma_cskcb) or "?",
                f"{r.so_dong:,}",
                f"{r.so_dong_trung:,}",
                f"{r.tong_chi:,.0f} VNĐ",
            ]
            for r in summary.itertuples(index=False)
        ],
        ["c", "l", "r", "r", "r"],
    ), unsafe_allow_html=True)

    tabs = st.tabs([SECTION_LABELS["valid"], SECTION_LABELS["duplicate"]])
    for tab, section in zip(tabs, ("valid", "duplicate")):
        with tab:
            st.markdown(pivot_table(preview.pivot, section), unsafe_allow_html=True)

    # ── Step 5: New records ──
    _render_new_section(store, preview.new_rows)

    # ── Step 6: Duplicate records ──
    _render_duplicate_section(store, preview.duplicate_rows)
