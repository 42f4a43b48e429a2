"""緊急避妊薬販売薬局データ取込み — メインエントリーポイント.

処理フロー:
  1. 厚労省ページから Excel の URL を取得
  2. Excel をダウンロードしてパース
  3. 住所をジオコーディング（キャッシュ優先、既定は先頭 500 件）
  4. 薬局データとメタ情報を保存
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import datetime, timezone

from collector.config import GEOCODE_ALL, GEOCODE_LIMIT, KV_META, KV_PHARMACIES, LOG_DIR
from collector.excel_parser import describe_rows, parse_pharmacies, read_rows
from collector.geocoder import GeocodeCache, geocode_pharmacies
from collector.models import DatasetMetadata
from collector.scraper import download_excel, fetch_landing_page, file_name_from_url, find_excel_url
from collector.storage import open_store

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """ロギングの初期設定."""
    log_file = LOG_DIR / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="厚労省の薬局一覧を取得してジオコーディングする")
    parser.add_argument("--all", action="store_true", default=GEOCODE_ALL, help="全件をジオコーディングする")
    parser.add_argument("--limit", type=int, default=GEOCODE_LIMIT, help="ジオコーディングする件数 (既定 500)")
    parser.add_argument("--check-headers", action="store_true", help="Excel の先頭行を表示して終了する")
    return parser.parse_args(argv)


def check_headers(rows: list[list]) -> None:
    """先頭 5 行の空でないセルをログに出す (列構成の確認用)."""
    for i, cells in enumerate(describe_rows(rows, 5)):
        logger.info("Row %d:", i)
        for idx, value in cells:
            logger.info("  [%d] %s", idx, value)


def run(args: argparse.Namespace) -> None:
    """メイン処理."""
    logger.info("=== 薬局データ取込み 開始 ===")
    start_time = time.time()

    # 1. Excel URL を取得
    html = fetch_landing_page()
    excel_url = find_excel_url(html)
    file_name = file_name_from_url(excel_url)

    # 2. ダウンロード・パース
    content = download_excel(excel_url)
    rows = read_rows(content, file_name)
    if args.check_headers:
        check_headers(rows)
        return

    pharmacies = parse_pharmacies(rows)

    # 3. ジオコーディング
    store = open_store()
    limit = None if args.all else args.limit
    logger.info("ジオコーディング中（%s）...", "全件" if limit is None else f"最初の{limit}件")
    try:
        summary = asyncio.run(geocode_pharmacies(pharmacies, GeocodeCache(store), limit=limit))
    finally:
        store.flush()

    # 4. 保存
    meta = DatasetMetadata(
        last_updated=datetime.now(timezone.utc).isoformat(),
        total_count=summary.total,
        source_url=excel_url,
        file_name=file_name,
    )
    store.put(
        KV_PHARMACIES,
        json.dumps([p.to_dict() for p in summary.pharmacies], ensure_ascii=False, indent=2),
    )
    store.put(KV_META, json.dumps(meta.to_dict(), ensure_ascii=False, indent=2))

    elapsed = time.time() - start_time
    logger.info("=== 薬局データ取込み 完了 ===")
    logger.info(
        "総件数: %d, 座標あり: %d, 範囲外で無効化: %d, 所要時間: %.1f 秒",
        summary.total, summary.success_count, summary.invalid_count, elapsed,
    )


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = parse_args(argv)
    try:
        run(args)
    except KeyboardInterrupt:
        logger.warning("ユーザーによる中断")
        return 130
    except Exception:
        logger.exception("致命的エラー")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
