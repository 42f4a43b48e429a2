"""ジオコーディングモジュール (国土地理院 AddressSearch API).

処理方針:
  1. キャッシュ (元の住所文字列をキー) を確認
  2. 未登録なら正規化した住所で検索し、0 件なら市区町村までに短縮して再検索
  3. 座標が都道府県の緯度範囲内なら採用してキャッシュ (30 日間)

1 件ごとのエラーはすべて「見つからない」扱いにし、バッチ全体は止めない。
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Protocol, Sequence

import aiohttp

from collector.address import normalize_address, shorten_address
from collector.config import (
    GEOCODE_BATCH_SIZE,
    GEOCODE_CACHE_PREFIX,
    GEOCODE_CACHE_TTL,
    GEOCODE_DELAY_SECONDS,
    GEOCODE_LIMIT,
    GSI_GEOCODE_API,
    PROGRESS_LOG_INTERVAL,
    REQUEST_TIMEOUT,
    USER_AGENT,
)
from collector.models import Coordinates, GeocodeResult, GeocodeSummary, PharmacyRecord
from collector.prefectures import is_coord_in_prefecture

logger = logging.getLogger(__name__)

# 1 件の処理結果
STATUS_CACHED = "cached"
STATUS_GEOCODED = "geocoded"
STATUS_INVALID = "invalid"
STATUS_NOT_FOUND = "not_found"


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...


class Geocoder(Protocol):
    async def geocode(self, address: str) -> GeocodeResult: ...


class GeocodeCache:
    """住所 → 座標のキャッシュ. 同期の保存先をスレッド経由で呼び出す."""

    def __init__(
        self,
        store: KeyValueStore,
        prefix: str = GEOCODE_CACHE_PREFIX,
        ttl_seconds: int = GEOCODE_CACHE_TTL,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, address: str) -> str:
        return f"{self.prefix}{address}"

    async def get(self, address: str) -> Coordinates | None:
        raw = await asyncio.to_thread(self.store.get, self._key(address))
        if not raw:
            return None
        data = json.loads(raw)
        return Coordinates(lat=float(data["lat"]), lng=float(data["lng"]))

    async def put(self, address: str, coords: Coordinates) -> None:
        value = json.dumps({"lat": coords.lat, "lng": coords.lng})
        await asyncio.to_thread(self.store.put, self._key(address), value, self.ttl_seconds)


def _first_coordinates(results: list) -> Coordinates:
    # GeoJSON 形式のため [経度, 緯度] の順
    lng, lat = results[0]["geometry"]["coordinates"][:2]
    return Coordinates(lat=float(lat), lng=float(lng))


class GsiGeocoder:
    """国土地理院 AddressSearch API クライアント."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str = GSI_GEOCODE_API) -> None:
        self.session = session
        self.base_url = base_url

    async def _search(self, query: str) -> list:
        async with self.session.get(self.base_url, params={"q": query}) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)
        return data if isinstance(data, list) else []

    async def geocode(self, address: str) -> GeocodeResult:
        """住所から座標を取得する. 例外は送出せず、失敗は found=False で返す."""
        query = address
        try:
            query = normalize_address(address)
            results = await self._search(query)
            if results:
                return GeocodeResult(query=query, coordinates=_first_coordinates(results))

            # 結果が見つからない場合、市区町村までの住所で再試行
            shorter = shorten_address(query)
            if shorter != query:
                query = shorter
                results = await self._search(query)
                if results:
                    return GeocodeResult(query=query, coordinates=_first_coordinates(results))

            return GeocodeResult(query=query, error="該当する住所がありません")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning("ジオコーディング失敗: address=%s, error=%r", address, e)
            return GeocodeResult(query=query, error=repr(e))


async def _geocode_one(
    pharmacy: PharmacyRecord, cache: GeocodeCache, geocoder: Geocoder
) -> tuple[PharmacyRecord, str]:
    """1 店舗分の座標を決める. 例外は外に出さない."""
    try:
        cached = await cache.get(pharmacy.address)
    except Exception as e:
        logger.warning("キャッシュ読み込み失敗: address=%s, error=%r", pharmacy.address, e)
        cached = None

    if cached is not None:
        return dataclasses.replace(pharmacy, lat=cached.lat, lng=cached.lng), STATUS_CACHED

    try:
        result = await geocoder.geocode(pharmacy.address)
    except Exception as e:
        logger.warning("ジオコーディング失敗: address=%s, error=%r", pharmacy.address, e)
        return pharmacy, STATUS_NOT_FOUND

    if result.coordinates is None:
        return pharmacy, STATUS_NOT_FOUND

    coords = result.coordinates
    if not is_coord_in_prefecture(coords.lat, pharmacy.prefecture):
        logger.warning(
            "座標が都道府県の範囲外: %s (%s) - lat: %s",
            pharmacy.name, pharmacy.prefecture, coords.lat,
        )
        return pharmacy, STATUS_INVALID

    try:
        await cache.put(pharmacy.address, coords)
    except Exception as e:
        logger.warning("キャッシュ書き込み失敗: address=%s, error=%r", pharmacy.address, e)

    return dataclasses.replace(pharmacy, lat=coords.lat, lng=coords.lng), STATUS_GEOCODED


async def geocode_pharmacies(
    pharmacies: Sequence[PharmacyRecord],
    cache: GeocodeCache,
    *,
    geocoder: Geocoder | None = None,
    batch_size: int = GEOCODE_BATCH_SIZE,
    delay_seconds: float = GEOCODE_DELAY_SECONDS,
    limit: int | None = GEOCODE_LIMIT,
) -> GeocodeSummary:
    """薬局リストをバッチ単位で並行ジオコーディングする.

    Args:
        limit: 先頭から処理する件数。None なら全件。範囲外のレコードは座標なしのまま返す。

    Returns:
        入力と同じ順序のレコード一覧と集計。
    """
    if batch_size < 1:
        raise ValueError(f"batch_size は 1 以上: {batch_size}")

    if geocoder is None:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            headers={"User-Agent": USER_AGENT},
        ) as session:
            return await geocode_pharmacies(
                pharmacies,
                cache,
                geocoder=GsiGeocoder(session),
                batch_size=batch_size,
                delay_seconds=delay_seconds,
                limit=limit,
            )

    results = list(pharmacies)
    target = len(results) if limit is None else min(limit, len(results))
    logger.info("ジオコーディング開始: %d/%d 件", target, len(results))

    invalid_count = 0
    for start in range(0, target, batch_size):
        end = min(start + batch_size, target)
        outcomes = await asyncio.gather(
            *(_geocode_one(results[i], cache, geocoder) for i in range(start, end))
        )
        # gather は引数順に結果を返すので、元の位置に書き戻す
        for offset, (record, status) in enumerate(outcomes):
            results[start + offset] = record
            if status == STATUS_INVALID:
                invalid_count += 1

        if end // PROGRESS_LOG_INTERVAL > start // PROGRESS_LOG_INTERVAL or end == target:
            logger.info("  %d/%d 完了", end, target)

        # レート制限対策
        if end < target:
            await asyncio.sleep(delay_seconds)

    success_count = sum(1 for p in results if p.lat is not None)
    logger.info("%d 件のジオコーディングが成功しました", success_count)
    if invalid_count:
        logger.info("%d 件の座標が都道府県の範囲外のため無効化されました", invalid_count)

    return GeocodeSummary(
        pharmacies=results,
        success_count=success_count,
        invalid_count=invalid_count,
        total=len(results),
    )
