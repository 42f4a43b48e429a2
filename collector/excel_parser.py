"""厚労省 Excel のパースモジュール.

処理は 2 段階:
  1. 先頭行を走査してヘッダー行と列マッピング (ColumnMapping) を決定
  2. マッピング経由でのみ各データ行のセルを読み、PharmacyRecord を生成

政府の改訂ごとに列構成が変わるため、マッピングは毎回作り直す。
"""

from __future__ import annotations

import io
import logging
import math
import re
from typing import Any, Literal, Sequence

import pandas as pd

from collector.address import format_phone_number, has_prefecture_prefix, infer_prefecture
from collector.config import HEADER_SCAN_ROWS
from collector.models import ColumnMapping, HeaderDetection, PharmacyRecord

logger = logging.getLogger(__name__)

# ヘッダー行と判定するための文字列
_HEADER_MARKERS = ("都道府県", "薬局", "店舗")

# 販売可能薬剤師数 (女性・男性・答えたくない の 3 列にまたがる)
_PHARMACIST_GROUP = "pharmacist_group"

# 完全一致ルール（部分一致より優先）
_EXACT_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("pharmacy_number", ("薬局等番号",)),
    ("prefecture", ("都道府県",)),
    ("name", ("薬局等名称",)),
    ("address", ("住所",)),
    ("phone", ("電話番号",)),
    (_PHARMACIST_GROUP, ("販売可能薬剤師数",)),
    ("website", ("HP", "ホームページ", "URL")),
    ("business_hours", ("開局等時間",)),
    ("after_hours_service", ("時間外対応",)),
    ("after_hours_phone", ("時間外の電話番号",)),
    ("privacy_measures", ("プライバシー確保策",)),
    ("advance_call_required", ("事前電話連絡",)),
    ("notes", ("備考",)),
]

# 部分一致ルール
_PARTIAL_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("name", ("薬局名", "店舗名")),
    (_PHARMACIST_GROUP, ("薬剤師数",)),
    ("business_hours", ("開局時間", "営業時間")),
    ("privacy_measures", ("プライバシー",)),
]

_LEADING_INT = re.compile(r"^\s*([+-]?[0-9]+)")


def _engine_for(file_name: str) -> Literal["openpyxl", "xlrd"]:
    suffix = file_name.lower().rsplit(".", 1)[-1]
    if suffix in ("xlsx", "xlsm", "xltx", "xltm"):
        return "openpyxl"
    return "xlrd"


def read_rows(content: bytes, file_name: str) -> list[list[Any]]:
    """Excel の先頭シートを行 (セル値のリスト) の一覧として読み込む."""
    df = pd.read_excel(  # type: ignore[call-overload]
        io.BytesIO(content),
        sheet_name=0,
        header=None,
        dtype="object",
        engine=_engine_for(file_name),
    )
    df = df.astype(object).where(df.notna(), None)
    rows = df.values.tolist()
    logger.info("Excel 読み込み完了: %d 行 x %d 列", len(rows), df.shape[1])
    return rows


def cell_text(value: Any) -> str:
    """セル値を前後空白なしの文字列にする. 空セルは ""."""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    return str(value).strip()


def _is_header_row(row: Sequence[Any]) -> bool:
    joined = " ".join(cell_text(c).lower() for c in row)
    return any(marker in joined for marker in _HEADER_MARKERS)


def _build_mapping(header: Sequence[Any]) -> ColumnMapping:
    """ヘッダー行のセルから ColumnMapping を作る.

    完全一致ルールを全セルに適用した後、未確定の項目についてだけ部分一致ルールを
    適用する。同じ項目に当たる列が複数ある場合は最初の列を採用する。
    """
    cells = [re.sub(r"\s+", "", cell_text(c)) for c in header]
    bound: dict[str, int] = {}
    consumed: set[int] = set()

    passes = (
        (_EXACT_RULES, lambda text, token: text == token),
        (_PARTIAL_RULES, lambda text, token: token in text),
    )
    for rules, matches in passes:
        for col, text in enumerate(cells):
            if not text or col in consumed:
                continue
            for key, tokens in rules:
                if key in bound:
                    continue
                if any(matches(text, token) for token in tokens):
                    bound[key] = col
                    consumed.add(col)
                    break

    group_col = bound.pop(_PHARMACIST_GROUP, None)
    if group_col is not None:
        # サブヘッダーは次の行にあり、実データは [col]=女性, [col+1]=男性, [col+2]=答えたくない
        bound["pharmacist_female"] = group_col
        bound["pharmacist_male"] = group_col + 1
        bound["pharmacist_other"] = group_col + 2
    return ColumnMapping(**bound)


def detect_header(
    rows: Sequence[Sequence[Any]], scan_rows: int = HEADER_SCAN_ROWS
) -> HeaderDetection | None:
    """先頭 scan_rows 行からヘッダー行を探し、列マッピングを返す.

    Returns:
        HeaderDetection。ヘッダー行が見つからなければ None。
    """
    for i, row in enumerate(rows[:scan_rows]):
        if not row:
            continue
        if _is_header_row(row):
            return HeaderDetection(header_row_index=i, mapping=_build_mapping(row))
    return None


def _get(row: Sequence[Any], index: int | None) -> str:
    if index is None or index >= len(row):
        return ""
    return cell_text(row[index])


def parse_count(text: str) -> int | None:
    """薬剤師数を整数に変換する. 数値でなければ None (0 とは区別する)."""
    m = _LEADING_INT.match(text)
    return int(m.group(1)) if m else None


def _optional(text: str) -> str | None:
    return text or None


def extract_pharmacies(
    rows: Sequence[Sequence[Any]], header_row_index: int, mapping: ColumnMapping
) -> list[PharmacyRecord]:
    """ヘッダー行より下のデータ行から PharmacyRecord を生成する.

    名称または住所が空の行はスキップする。
    """
    pharmacies: list[PharmacyRecord] = []

    for i in range(header_row_index + 1, len(rows)):
        row = rows[i]
        if not row:
            continue

        name = _get(row, mapping.name)
        address = _get(row, mapping.address)
        if not name or not address:
            continue

        prefecture = _get(row, mapping.prefecture) or infer_prefecture(address) or ""

        # 住所が都道府県名で始まっていなければ先頭に付ける
        if prefecture and not address.startswith(prefecture) and not has_prefecture_prefix(address):
            address = prefecture + address

        after_hours_phone = format_phone_number(_get(row, mapping.after_hours_phone))

        pharmacies.append(PharmacyRecord(
            id=f"pharmacy-{i}",
            pharmacy_number=_optional(_get(row, mapping.pharmacy_number)),
            prefecture=prefecture,
            name=name,
            address=address,
            phone=format_phone_number(_get(row, mapping.phone)),
            lat=None,
            lng=None,
            pharmacist_female=parse_count(_get(row, mapping.pharmacist_female)),
            pharmacist_male=parse_count(_get(row, mapping.pharmacist_male)),
            pharmacist_other=parse_count(_get(row, mapping.pharmacist_other)),
            website=_optional(_get(row, mapping.website)),
            business_hours=_optional(_get(row, mapping.business_hours)),
            after_hours_service=_optional(_get(row, mapping.after_hours_service)),
            after_hours_phone=_optional(after_hours_phone),
            privacy_measures=_optional(_get(row, mapping.privacy_measures)),
            advance_call_required=_optional(_get(row, mapping.advance_call_required)),
            notes=_optional(_get(row, mapping.notes)),
        ))

    return pharmacies


def parse_pharmacies(rows: Sequence[Sequence[Any]]) -> list[PharmacyRecord]:
    """ヘッダー検出からレコード生成までを行う.

    ヘッダー行が見つからない場合はデフォルトのマッピングで続行する。
    """
    detection = detect_header(rows)
    if detection is None:
        logger.warning("ヘッダー行が見つかりません。デフォルトのマッピングを使用します。")
        detection = HeaderDetection(header_row_index=0, mapping=ColumnMapping.default())

    logger.info("ヘッダー行: %d, カラムマッピング: %s", detection.header_row_index, detection.mapping)
    pharmacies = extract_pharmacies(rows, detection.header_row_index, detection.mapping)
    logger.info("%d 件の薬局データをパースしました", len(pharmacies))
    return pharmacies


def describe_rows(rows: Sequence[Sequence[Any]], count: int = 5) -> list[list[tuple[int, str]]]:
    """先頭 count 行の空でないセルを (列番号, 値) で返す. ヘッダー確認用."""
    described = []
    for row in rows[:count]:
        cells = [(idx, cell_text(v)) for idx, v in enumerate(row or [])]
        described.append([(idx, text) for idx, text in cells if text])
    return described
