"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field

# PharmacyRecord の属性名と JSON キーの対応
_JSON_KEYS = {
    "id": "id",
    "pharmacy_number": "pharmacyNumber",
    "prefecture": "prefecture",
    "name": "name",
    "address": "address",
    "phone": "phone",
    "lat": "lat",
    "lng": "lng",
    "pharmacist_female": "pharmacistFemale",
    "pharmacist_male": "pharmacistMale",
    "pharmacist_other": "pharmacistOther",
    "website": "website",
    "business_hours": "businessHours",
    "after_hours_service": "afterHoursService",
    "after_hours_phone": "afterHoursPhone",
    "privacy_measures": "privacyMeasures",
    "advance_call_required": "advanceCallRequired",
    "notes": "notes",
}

# 常に出力する (None でも省略しない) 属性
_ALWAYS_PRESENT = {"id", "prefecture", "name", "address", "phone", "lat", "lng"}


@dataclass
class PharmacyRecord:
    """薬局 1 店舗を表す.

    任意項目の None は「非公開」を意味し、0 とは区別する。
    """

    id: str
    prefecture: str
    name: str
    address: str
    phone: str
    lat: float | None = None
    lng: float | None = None
    pharmacy_number: str | None = None  # 薬局等番号
    pharmacist_female: int | None = None
    pharmacist_male: int | None = None
    pharmacist_other: int | None = None  # 答えたくない
    website: str | None = None
    business_hours: str | None = None
    after_hours_service: str | None = None
    after_hours_phone: str | None = None
    privacy_measures: str | None = None
    advance_call_required: str | None = None
    notes: str | None = None

    @property
    def geocoded(self) -> bool:
        return self.lat is not None and self.lng is not None

    def to_dict(self) -> dict:
        """JSON 用の dict に変換する. 値が None の任意項目は省略する."""
        data = {}
        for attr, key in _JSON_KEYS.items():
            value = getattr(self, attr)
            if value is None and attr not in _ALWAYS_PRESENT:
                continue
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> PharmacyRecord:
        kwargs = {attr: data.get(key) for attr, key in _JSON_KEYS.items()}
        for attr in ("prefecture", "name", "address", "phone"):
            kwargs[attr] = kwargs[attr] or ""
        return cls(**kwargs)


@dataclass
class DatasetMetadata:
    """取込み 1 回分のメタ情報."""

    last_updated: str  # ISO 8601
    total_count: int
    source_url: str
    file_name: str

    def to_dict(self) -> dict:
        return {
            "lastUpdated": self.last_updated,
            "totalCount": self.total_count,
            "sourceUrl": self.source_url,
            "fileName": self.file_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DatasetMetadata:
        return cls(
            last_updated=data.get("lastUpdated", ""),
            total_count=int(data.get("totalCount", 0)),
            source_url=data.get("sourceUrl", ""),
            file_name=data.get("fileName", ""),
        )


@dataclass(frozen=True)
class ColumnMapping:
    """意味上の項目 → 列番号 (0 始まり). 未検出の項目は None."""

    pharmacy_number: int | None = None
    prefecture: int | None = None
    name: int | None = None
    address: int | None = None
    phone: int | None = None
    pharmacist_female: int | None = None
    pharmacist_male: int | None = None
    pharmacist_other: int | None = None
    website: int | None = None
    business_hours: int | None = None
    after_hours_service: int | None = None
    after_hours_phone: int | None = None
    privacy_measures: int | None = None
    advance_call_required: int | None = None
    notes: int | None = None

    @classmethod
    def default(cls) -> ColumnMapping:
        """ヘッダー行が見つからない場合の固定マッピング."""
        return cls(prefecture=0, name=1, address=2, phone=3, notes=4)


@dataclass(frozen=True)
class HeaderDetection:
    """ヘッダー行の検出結果."""

    header_row_index: int
    mapping: ColumnMapping


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class GeocodeResult:
    """ジオコーディング 1 件の結果.

    coordinates が None なら「見つからなかった」(失敗理由は error)。
    """

    query: str
    coordinates: Coordinates | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.coordinates is not None


@dataclass
class GeocodeSummary:
    """バッチジオコーディングの集計."""

    pharmacies: list[PharmacyRecord] = field(default_factory=list)
    success_count: int = 0
    invalid_count: int = 0
    total: int = 0
