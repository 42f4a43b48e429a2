"""保存済み薬局データの検索.

フィルター:
  - 都道府県（完全一致）
  - フリーワード（名称・住所の部分一致、大文字小文字を区別しない）
  - 現在地からの距離（Haversine、デフォルト 10km）。指定時は距離の昇順
"""

from __future__ import annotations

import argparse
import json
import math
import sys
from collections import Counter
from typing import Iterable

from collector.config import KV_META, KV_PHARMACIES
from collector.models import DatasetMetadata, PharmacyRecord
from collector.storage import open_store

EARTH_RADIUS_KM = 6371.0
DEFAULT_RADIUS_KM = 10.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """2 点間の距離 (km)."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def search_pharmacies(
    pharmacies: Iterable[PharmacyRecord],
    *,
    prefecture: str | None = None,
    query: str | None = None,
    lat: float | None = None,
    lng: float | None = None,
    radius_km: float | None = None,
) -> list[dict]:
    """条件に合う薬局を JSON 用の dict で返す.

    位置指定時は座標のない薬局を除き、各要素に distance (km) を付ける。
    """
    results = list(pharmacies)

    if prefecture:
        results = [p for p in results if p.prefecture == prefecture]

    if query:
        q = query.lower()
        results = [p for p in results if q in p.name.lower() or q in p.address.lower()]

    if lat is None or lng is None:
        return [p.to_dict() for p in results]

    radius = DEFAULT_RADIUS_KM if radius_km is None else radius_km
    with_distance = []
    for p in results:
        if not p.geocoded:
            continue
        distance = haversine_km(lat, lng, p.lat, p.lng)
        if distance <= radius:
            with_distance.append((distance, p))
    with_distance.sort(key=lambda t: t[0])
    return [{**p.to_dict(), "distance": distance} for distance, p in with_distance]


def count_by_prefecture(pharmacies: Iterable[PharmacyRecord]) -> dict[str, int]:
    """都道府県ごとの薬局数."""
    return dict(Counter(p.prefecture for p in pharmacies))


def load_dataset(store) -> tuple[list[PharmacyRecord], DatasetMetadata | None]:
    """保存先から薬局データとメタ情報を読み込む. 未保存なら ([], None)."""
    pharmacies_json = store.get(KV_PHARMACIES)
    meta_json = store.get(KV_META)
    pharmacies = [PharmacyRecord.from_dict(d) for d in json.loads(pharmacies_json)] if pharmacies_json else []
    meta = DatasetMetadata.from_dict(json.loads(meta_json)) if meta_json else None
    return pharmacies, meta


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="保存済みの薬局データを検索する")
    parser.add_argument("--prefecture", help="都道府県 (例: 東京都)")
    parser.add_argument("--query", help="名称・住所のフリーワード")
    parser.add_argument("--lat", type=float, help="現在地の緯度")
    parser.add_argument("--lng", type=float, help="現在地の経度")
    parser.add_argument("--radius", type=float, default=None, help="検索半径 km (デフォルト 10)")
    parser.add_argument("--counts", action="store_true", help="都道府県ごとの件数を表示")
    args = parser.parse_args(argv)

    pharmacies, meta = load_dataset(open_store())
    if args.counts:
        output: dict = {"prefectures": count_by_prefecture(pharmacies)}
    else:
        output = {
            "pharmacies": search_pharmacies(
                pharmacies,
                prefecture=args.prefecture,
                query=args.query,
                lat=args.lat,
                lng=args.lng,
                radius_km=args.radius,
            ),
            "meta": meta.to_dict() if meta else None,
        }
    json.dump(output, sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
