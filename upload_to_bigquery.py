#!/usr/bin/env python3
"""
upload_to_bigquery.py - Upload dữ liệu BHYT từ Excel lên BigQuery
===================================================================
Sử dụng: source venv/bin/activate && python upload_to_bigquery.py CPBQ.xlsx [ten_sheet]

Tính năng:
  - Tự tìm sheet có đủ 14 cột bắt buộc (hoặc dùng sheet chỉ định)
  - Chuẩn hóa kiểu dữ liệu, loại dòng không hợp lệ
  - Tự động tạo dataset/table nếu chưa có
  - Check trùng lặp row-level theo (ma_cskcb + ma_bn + ma_loaikcb + ngay_vao + ngay_ra)
  - Thêm metadata: upload_timestamp, source_file

Đặt CPBQ_LOG_LEVEL=INFO để xem log chi tiết từng batch.
"""

import sys
import os
import logging

import config
from bq_store import connect
from cpbq_import import FormatError, NoCompatibleSheetError, StoreError
from cpbq_import.commit import MODE_NEW, MODE_OVERWRITE
from cpbq_import.pipeline import commit_selection, open_workbook, prepare_import, select_candidate
from cpbq_import.schema import ROW_KEY_COLS


def _print_period_summary(preview):
    summary = preview.period_summary()
    print("\n  📋 Tóm tắt dữ liệu hợp lệ:")
    for r in summary.itertuples(index=False):
        period = preview.pivot.period_label((r.nam_qt, r.thang_qt))
        dup = f" ({r.so_dong_trung} trùng)" if r.so_dong_trung else ""
        print(f"     - {period} | CSKCB: {r.ma_cskcb} | "
              f"{r.so_dong} dòng{dup} | Tổng chi: {r.tong_chi:,.0f} VND")


def _print_report(report):
    print(f"  ✅ Đã tải lên: {report.uploaded:,} dòng")
    if report.skipped_duplicates:
        print(f"  ℹ️  Bỏ qua {report.skipped_duplicates:,} dòng vừa phát hiện trùng khi kiểm tra lại")
    if report.recheck_failed_batches:
        print(f"  ⚠️  {report.recheck_failed_batches} batch kiểm tra lại bị lỗi (coi như mới)")
    if report.failed:
        print(f"  ❌ Lỗi: {report.failed:,} dòng ({report.failed_batches}/{report.batches} batch)")


# ─── Main ──────────────────────────────────────────────────────────────────────

def main():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="  %(levelname)s %(name)s: %(message)s",
    )

    if len(sys.argv) < 2:
        print("❌ Cách dùng: python upload_to_bigquery.py <đường_dẫn_file_excel> [tên_sheet]")
        print("   Ví dụ: python upload_to_bigquery.py CPBQ.xlsx TH")
        sys.exit(1)

    filepath = sys.argv[1]
    sheet_name = sys.argv[2] if len(sys.argv) > 2 else None
    if not os.path.exists(filepath):
        print(f"❌ Không tìm thấy file: {filepath}")
        sys.exit(1)

    filename = os.path.basename(filepath)
    print(f"\n{'='*60}")
    print("📊 UPLOAD DỮ LIỆU BHYT LÊN BIGQUERY")
    print(f"{'='*60}")
    print(f"  📁 File: {filename}")
    print(f"  🎯 Target: {config.FULL_TABLE_ID}")
    print(f"  📍 Location: {config.LOCATION}")
    print()

    # ── Step 1: Read Excel & detect sheet ──
    print("📖 Bước 1: Đọc file Excel...")
    try:
        xls, candidates = open_workbook(filepath, scan_rows=config.HEADER_SCAN_ROWS)
        candidate = select_candidate(candidates, sheet_name)
    except FormatError as e:
        print(f"  ❌ {e}")
        sys.exit(1)
    except NoCompatibleSheetError as e:
        print(f"  ❌ {e}")
        for col, n_sheets in e.most_missing()[:10]:
            print(f"     - {col}: thiếu ở {n_sheets} sheet")
        sys.exit(1)
    print(f"  ✅ Sheet '{candidate.sheet_name}': {len(candidate.matched_cols)} cột khớp, "
          f"{len(candidate.extra_cols)} cột thừa (header dòng {candidate.header_row + 1})")

    # ── Step 2: Connect to BigQuery ──
    print("\n🔗 Bước 2: Kết nối BigQuery...")
    try:
        store = connect()
        print(f"  ✅ Đã kết nối project '{config.PROJECT_ID}'")
        print("\n📦 Kiểm tra dataset & table...")
        print(f"  ✅ Đã tạo dataset '{config.DATASET_ID}'" if store.ensure_dataset()
              else f"  ✅ Dataset '{config.DATASET_ID}' đã tồn tại")
        print(f"  ✅ Đã tạo table '{config.TABLE_ID}'" if store.ensure_table()
              else f"  ✅ Table '{config.TABLE_ID}' đã tồn tại")
    except Exception as e:
        print(f"  ❌ Lỗi kết nối: {e}")
        print("  💡 Kiểm tra BQ_CREDENTIALS_JSON hoặc file credentials/client_secret.json")
        sys.exit(1)

    # ── Step 3: Transform, validate, check duplicates ──
    print("\n🔍 Bước 3: Chuẩn hóa, kiểm tra và so sánh với BigQuery...")
    print(f"  🔑 Composite key: {' + '.join(ROW_KEY_COLS)}")
    preview = prepare_import(
        xls, candidate, filename, store=store,
        lookup_batch_size=config.LOOKUP_BATCH_SIZE,
    )
    acc = preview.accounting()
    print(f"  ✅ Đọc được {acc['total']:,} dòng: {acc['valid']:,} hợp lệ, {acc['invalid']:,} không hợp lệ")
    for col, n in preview.validation.issue_list():
        print(f"     - {col}: {n:,} dòng lỗi")
    for w in preview.warnings:
        print(f"  ⚠️  {w}")

    if not acc["valid"]:
        print("\n  ℹ️  Không có dữ liệu hợp lệ để upload.")
        sys.exit(0)

    _print_period_summary(preview)

    new_df = preview.new_rows
    dup_df = preview.duplicate_rows
    upload_dups = False

    if not dup_df.empty:
        print(f"\n  ⚠️  Phát hiện {len(dup_df):,}/{acc['valid']:,} dòng đã tồn tại trên BigQuery")
        print(f"  ℹ️  Dòng mới (chưa có trên BQ): {len(new_df):,}")

        choice = input("\n  Bạn muốn:\n"
                       "    [1] Bỏ qua phần trùng, chỉ upload phần mới\n"
                       "    [3] Xóa dữ liệu trùng cũ rồi upload lại tất cả\n"
                       "    [0] Hủy\n"
                       "  Chọn (0/1/3): ").strip()

        if choice == "1":
            if new_df.empty:
                print("\n  ℹ️  Không còn dữ liệu mới để upload.")
                sys.exit(0)
        elif choice == "3":
            upload_dups = True
        else:
            print("\n  ❌ Đã hủy upload.")
            sys.exit(0)
    else:
        print("\n  ✅ Không phát hiện trùng lặp.")

    # ── Step 4: Upload ──
    print("\n🚀 Bước 4: Upload dữ liệu...")
    failed = 0
    if not new_df.empty:
        print(f"  ⏳ Đang upload {len(new_df):,} dòng mới...")
        report = commit_selection(store, new_df, MODE_NEW, batch_size=config.COMMIT_BATCH_SIZE,
                                  lookup_batch_size=config.LOOKUP_BATCH_SIZE)
        _print_report(report)
        failed += report.failed
    if upload_dups:
        print(f"  🗑️  Đang thay thế {len(dup_df):,} dòng trùng...")
        report = commit_selection(store, dup_df, MODE_OVERWRITE, batch_size=config.COMMIT_BATCH_SIZE)
        _print_report(report)
        failed += report.failed

    try:
        print(f"  📊 Tổng số dòng trên BigQuery: {store.count_rows():,}")
    except StoreError as e:
        print(f"  ⚠️  Không đọc được số dòng trên BigQuery: {e}")

    print(f"\n{'='*60}")
    print("🎉 HOÀN THÀNH!" if not failed else f"⚠️  HOÀN THÀNH VỚI {failed:,} DÒNG LỖI")
    print(f"{'='*60}")
    print(f"  Để truy vấn dữ liệu, vào: https://console.cloud.google.com/bigquery?project={config.PROJECT_ID}")
    print()
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
