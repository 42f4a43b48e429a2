"""住所・電話番号の正規化モジュール."""

from __future__ import annotations

import re

# 先頭の都道府県名 (北海道・東京都・大阪府・京都府 または 2〜3文字 + 県)
PREFECTURE_PREFIX_PATTERN = re.compile(r"^(北海道|東京都|大阪府|京都府|.{2,3}県)")

# 都道府県 + 市区町村 (郡) までを抽出する
_MUNICIPALITY_PATTERN = re.compile(r"^(北海道|東京都|大阪府|京都府|.{2,3}県)(.+?[市区町村郡])")

_FULLWIDTH_DIGITS = str.maketrans("０１２３４５６７８９", "0123456789")
_HYPHEN_VARIANTS = re.compile(r"[ー−―－‐]")
_NON_PHONE_CHARS = re.compile(r"[^0-9\-]")


def normalize_address(address: str) -> str:
    """ジオコーディング検索用に住所を正規化する.

    例: "東京都千代田区霞が関１丁目２番地２号" → "東京都千代田区霞が関1-2-2"
    """
    s = address.translate(_FULLWIDTH_DIGITS)
    s = _HYPHEN_VARIANTS.sub("-", s)
    s = re.sub(r"\s+", "", s)
    s = s.replace("丁目", "-")
    s = re.sub(r"番地?", "-", s)
    s = s.replace("号", "")
    s = re.sub(r"-+", "-", s)
    return re.sub(r"-$", "", s)


def shorten_address(address: str) -> str:
    """住所を市区町村レベルまで短くする. 抽出できなければそのまま返す."""
    m = _MUNICIPALITY_PATTERN.match(address)
    if m:
        return m.group(1) + m.group(2)
    return address


def infer_prefecture(address: str) -> str | None:
    """住所の先頭から都道府県名を推定する."""
    m = PREFECTURE_PREFIX_PATTERN.match(address)
    return m.group(1) if m else None


def has_prefecture_prefix(address: str) -> bool:
    return PREFECTURE_PREFIX_PATTERN.match(address) is not None


def format_phone_number(phone: str) -> str:
    """数字とハイフン以外を取り除く."""
    return _NON_PHONE_CHARS.sub("", phone)
