"""geocoder モジュールのユニットテスト."""

import asyncio
import json

import aiohttp
from aiohttp import test_utils, web

from collector.geocoder import GeocodeCache, GsiGeocoder, geocode_pharmacies
from collector.models import Coordinates, GeocodeResult, PharmacyRecord


class DictStore:
    """テスト用のインメモリ保存先."""

    def __init__(self):
        self.data = {}
        self.puts = []

    def get(self, key):
        return self.data.get(key)

    def put(self, key, value, ttl_seconds=None):
        self.data[key] = value
        self.puts.append((key, value, ttl_seconds))


class BrokenStore:
    def get(self, key):
        raise OSError("disk error")

    def put(self, key, value, ttl_seconds=None):
        raise OSError("disk error")


class FakeGeocoder:
    """住所 → 座標の表を返すジオコーダー."""

    def __init__(self, table, delays=None):
        self.table = table
        self.delays = delays or {}
        self.calls = []

    async def geocode(self, address):
        self.calls.append(address)
        if address in self.delays:
            await asyncio.sleep(self.delays[address])
        coords = self.table.get(address)
        if coords is None:
            return GeocodeResult(query=address, error="not found")
        return GeocodeResult(query=address, coordinates=Coordinates(*coords))


class StubGsiGeocoder(GsiGeocoder):
    """_search の応答を差し替えた GsiGeocoder."""

    def __init__(self, responses):
        super().__init__(session=None)
        self.responses = list(responses)
        self.queries = []

    async def _search(self, query):
        self.queries.append(query)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _gsi_result(lat, lng):
    return [{"geometry": {"coordinates": [lng, lat], "type": "Point"}, "properties": {"title": "x"}}]


def _pharmacy(i, prefecture="東京都", address=None):
    return PharmacyRecord(
        id=f"pharmacy-{i}",
        prefecture=prefecture,
        name=f"薬局{i}",
        address=address or f"{prefecture}千代田区{i}-1-1",
        phone="03-0000-0000",
    )


def _run(coro):
    return asyncio.run(coro)


class TestGsiGeocoder:
    """GsiGeocoder.geocode のテスト."""

    def test_first_result(self):
        geocoder = StubGsiGeocoder([_gsi_result(35.68, 139.75)])
        result = _run(geocoder.geocode("東京都千代田区霞が関１丁目２番地２号"))

        assert result.found
        assert result.coordinates == Coordinates(lat=35.68, lng=139.75)
        assert geocoder.queries == ["東京都千代田区霞が関1-2-2"]

    def test_retry_with_shorter_address(self):
        """0 件なら市区町村までの住所で再検索し、その結果を返すこと."""
        geocoder = StubGsiGeocoder([[], _gsi_result(35.44, 139.64)])
        result = _run(geocoder.geocode("神奈川県横浜市中区存在しない町9-9-9"))

        assert result.coordinates == Coordinates(lat=35.44, lng=139.64)
        assert geocoder.queries == ["神奈川県横浜市中区存在しない町9-9-9", "神奈川県横浜市"]
        assert result.query == "神奈川県横浜市"

    def test_retry_also_empty(self):
        geocoder = StubGsiGeocoder([[], []])
        result = _run(geocoder.geocode("東京都千代田区不明1-1"))

        assert not result.found
        assert result.coordinates is None

    def test_no_retry_when_not_shortenable(self):
        geocoder = StubGsiGeocoder([[]])
        result = _run(geocoder.geocode("どこか1-1"))

        assert not result.found
        assert geocoder.queries == ["どこか1-1"]

    def test_network_error_is_not_found(self):
        """通信エラーでも例外にならず not found になること."""
        geocoder = StubGsiGeocoder([aiohttp.ClientConnectionError("unreachable")])
        result = _run(geocoder.geocode("東京都千代田区1-1"))

        assert not result.found
        assert "unreachable" in result.error

    def test_malformed_response_is_not_found(self):
        geocoder = StubGsiGeocoder([[{"geometry": {}}]])
        result = _run(geocoder.geocode("東京都千代田区1-1"))

        assert not result.found

    def test_timeout_is_not_found(self):
        geocoder = StubGsiGeocoder([asyncio.TimeoutError()])
        result = _run(geocoder.geocode("東京都千代田区1-1"))

        assert not result.found


async def _geocode_via_server(responses, address):
    """ローカルの aiohttp サーバーに対して GsiGeocoder を実行し、(結果, 受け取った q) を返す.

    responses はレスポンスを作る関数のリストで、リクエストごとに先頭から使う。
    """
    queries = []
    pending = list(responses)

    async def handler(request):
        queries.append(request.query.get("q"))
        return pending.pop(0)()

    app = web.Application()
    app.router.add_get("/AddressSearch", handler)
    async with test_utils.TestServer(app) as server:
        async with aiohttp.ClientSession() as session:
            geocoder = GsiGeocoder(session, str(server.make_url("/AddressSearch")))
            result = await geocoder.geocode(address)
    return result, queries


class TestGsiGeocoderHttp:
    """GsiGeocoder を実際の HTTP 通信で動かすテスト."""

    def test_list_response(self):
        result, queries = _run(_geocode_via_server(
            [lambda: web.json_response(_gsi_result(35.68, 139.75))],
            "東京都千代田区霞が関１丁目２番地２号",
        ))

        assert result.coordinates == Coordinates(lat=35.68, lng=139.75)
        assert queries == ["東京都千代田区霞が関1-2-2"]

    def test_empty_then_retry(self):
        result, queries = _run(_geocode_via_server(
            [lambda: web.json_response([]), lambda: web.json_response(_gsi_result(35.44, 139.64))],
            "神奈川県横浜市中区存在しない町9-9-9",
        ))

        assert result.coordinates == Coordinates(lat=35.44, lng=139.64)
        assert queries == ["神奈川県横浜市中区存在しない町9-9-9", "神奈川県横浜市"]

    def test_server_error_is_not_found(self):
        """503 は再検索せず not found になること."""
        result, queries = _run(_geocode_via_server(
            [lambda: web.Response(status=503, text="Service Unavailable")],
            "東京都千代田区1-1",
        ))

        assert not result.found
        assert "503" in result.error
        assert queries == ["東京都千代田区1-1"]

    def test_non_json_body_is_not_found(self):
        result, queries = _run(_geocode_via_server(
            [lambda: web.Response(text="<html>maintenance</html>", content_type="text/html")],
            "東京都千代田区1-1",
        ))

        assert not result.found
        assert result.coordinates is None
        assert queries == ["東京都千代田区1-1"]

    def test_non_list_body_treated_as_empty(self):
        """配列以外の JSON は 0 件扱いで再検索すること."""
        result, queries = _run(_geocode_via_server(
            [lambda: web.json_response({"message": "error"}), lambda: web.json_response([])],
            "東京都千代田区1-1",
        ))

        assert not result.found
        assert queries == ["東京都千代田区1-1", "東京都千代田区"]


class TestGeocodeCache:
    """GeocodeCache のテスト."""

    def test_round_trip(self):
        store = DictStore()
        cache = GeocodeCache(store)

        _run(cache.put("東京都千代田区1-1", Coordinates(35.1, 139.2)))

        assert _run(cache.get("東京都千代田区1-1")) == Coordinates(35.1, 139.2)
        key, value, ttl = store.puts[0]
        assert key == "geocode:東京都千代田区1-1"
        assert json.loads(value) == {"lat": 35.1, "lng": 139.2}
        assert ttl == 30 * 24 * 60 * 60

    def test_miss(self):
        assert _run(GeocodeCache(DictStore()).get("東京都")) is None


class TestGeocodePharmacies:
    """geocode_pharmacies のテスト."""

    def test_geocodes_and_caches(self):
        store = DictStore()
        pharmacy = _pharmacy(1)
        geocoder = FakeGeocoder({pharmacy.address: (35.69, 139.75)})

        summary = _run(geocode_pharmacies(
            [pharmacy], GeocodeCache(store), geocoder=geocoder, delay_seconds=0,
        ))

        [p] = summary.pharmacies
        assert (p.lat, p.lng) == (35.69, 139.75)
        assert summary.success_count == 1
        assert summary.invalid_count == 0
        assert summary.total == 1
        assert f"geocode:{pharmacy.address}" in store.data

    def test_cache_hit_skips_geocoder(self):
        """キャッシュ済みの住所はジオコーダーを呼ばずに同じ座標を返すこと."""
        store = DictStore()
        cache = GeocodeCache(store)
        pharmacy = _pharmacy(1)
        _run(cache.put(pharmacy.address, Coordinates(35.7, 139.8)))
        geocoder = FakeGeocoder({})

        summary = _run(geocode_pharmacies([pharmacy], cache, geocoder=geocoder, delay_seconds=0))

        assert geocoder.calls == []
        assert (summary.pharmacies[0].lat, summary.pharmacies[0].lng) == (35.7, 139.8)

    def test_out_of_range_rejected(self):
        """都道府県の緯度範囲外の座標は採用もキャッシュもしないこと."""
        store = DictStore()
        pharmacy = _pharmacy(1, prefecture="東京都")
        geocoder = FakeGeocoder({pharmacy.address: (43.06, 141.35)})

        summary = _run(geocode_pharmacies(
            [pharmacy], GeocodeCache(store), geocoder=geocoder, delay_seconds=0,
        ))

        [p] = summary.pharmacies
        assert p.lat is None
        assert p.lng is None
        assert summary.invalid_count == 1
        assert summary.success_count == 0
        assert store.data == {}

    def test_not_found_left_null(self):
        summary = _run(geocode_pharmacies(
            [_pharmacy(1)], GeocodeCache(DictStore()), geocoder=FakeGeocoder({}), delay_seconds=0,
        ))

        assert summary.pharmacies[0].lat is None
        assert summary.invalid_count == 0

    def test_order_preserved(self):
        """バッチ内の完了順に関係なく入力順で返すこと."""
        pharmacies = [_pharmacy(i) for i in range(7)]
        table = {p.address: (35.5 + i * 0.01, 139.0) for i, p in enumerate(pharmacies)}
        # 先頭ほど遅く完了させる
        delays = {p.address: (7 - i) * 0.005 for i, p in enumerate(pharmacies)}
        geocoder = FakeGeocoder(table, delays)

        summary = _run(geocode_pharmacies(
            pharmacies, GeocodeCache(DictStore()), geocoder=geocoder, batch_size=3, delay_seconds=0,
        ))

        assert [p.id for p in summary.pharmacies] == [p.id for p in pharmacies]
        assert [p.lat for p in summary.pharmacies] == [table[p.address][0] for p in pharmacies]

    def test_limit(self):
        """limit 件目以降は処理せず座標なしのまま返すこと."""
        pharmacies = [_pharmacy(i) for i in range(5)]
        geocoder = FakeGeocoder({p.address: (35.6, 139.7) for p in pharmacies})

        summary = _run(geocode_pharmacies(
            pharmacies, GeocodeCache(DictStore()), geocoder=geocoder, limit=3, delay_seconds=0,
        ))

        assert len(geocoder.calls) == 3
        assert [p.lat is not None for p in summary.pharmacies] == [True, True, True, False, False]
        assert summary.total == 5
        assert summary.success_count == 3

    def test_no_limit(self):
        pharmacies = [_pharmacy(i) for i in range(12)]
        geocoder = FakeGeocoder({p.address: (35.6, 139.7) for p in pharmacies})

        summary = _run(geocode_pharmacies(
            pharmacies, GeocodeCache(DictStore()), geocoder=geocoder, limit=None, delay_seconds=0,
        ))

        assert summary.success_count == 12

    def test_delay_between_batches(self, monkeypatch):
        """バッチ間でのみ待機し、最後のバッチの後は待たないこと."""
        delays = []

        async def fake_sleep(seconds):
            if seconds:
                delays.append(seconds)

        monkeypatch.setattr("collector.geocoder.asyncio.sleep", fake_sleep)
        pharmacies = [_pharmacy(i) for i in range(25)]

        _run(geocode_pharmacies(
            pharmacies, GeocodeCache(DictStore()), geocoder=FakeGeocoder({}),
            batch_size=10, delay_seconds=0.1,
        ))

        assert delays == [0.1, 0.1]

    def test_store_errors_do_not_abort(self):
        """保存先のエラーは未キャッシュとして扱い、処理を続けること."""
        pharmacy = _pharmacy(1)
        geocoder = FakeGeocoder({pharmacy.address: (35.69, 139.75)})

        summary = _run(geocode_pharmacies(
            [pharmacy], GeocodeCache(BrokenStore()), geocoder=geocoder, delay_seconds=0,
        ))

        assert geocoder.calls == [pharmacy.address]
        assert summary.pharmacies[0].lat == 35.69

    def test_geocoder_exception_contained(self):
        class ExplodingGeocoder:
            async def geocode(self, address):
                raise RuntimeError("boom")

        summary = _run(geocode_pharmacies(
            [_pharmacy(1), _pharmacy(2)], GeocodeCache(DictStore()),
            geocoder=ExplodingGeocoder(), delay_seconds=0,
        ))

        assert [p.lat for p in summary.pharmacies] == [None, None]
        assert summary.total == 2

    def test_latitude_always_within_band(self):
        """採用された緯度は必ずその都道府県の範囲内であること."""
        from collector.prefectures import PREFECTURE_LAT_RANGES

        pharmacies = [
            _pharmacy(1, "北海道"),
            _pharmacy(2, "沖縄県"),
            _pharmacy(3, "大阪府"),
            _pharmacy(4, "福岡県"),
        ]
        # 北海道と福岡県は範囲外の座標
        lats = [35.0, 26.2, 34.7, 43.0]
        geocoder = FakeGeocoder({p.address: (lat, 135.0) for p, lat in zip(pharmacies, lats)})

        summary = _run(geocode_pharmacies(
            pharmacies, GeocodeCache(DictStore()), geocoder=geocoder, delay_seconds=0,
        ))

        for p in summary.pharmacies:
            if p.lat is not None:
                low, high = PREFECTURE_LAT_RANGES[p.prefecture]
                assert low <= p.lat <= high
        assert summary.invalid_count == 2
        assert summary.success_count == 2
