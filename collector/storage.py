"""キーバリュー形式の保存先 (ローカルファイル / Supabase)."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path

from collector import db
from collector.config import DATA_DIR, KV_META, KV_PHARMACIES, STORAGE_BACKEND

logger = logging.getLogger(__name__)


class FileStore:
    """ローカルディレクトリに保存する.

    pharmacies / meta はそれぞれ <key>.json、それ以外のキー (ジオコーディング
    キャッシュ) は 1 つの JSON ファイルにまとめて有効期限付きで保存する。
    キャッシュは save_interval 件ごとと flush() 時に一時ファイル経由で書き出す。
    """

    DOCUMENT_KEYS = (KV_PHARMACIES, KV_META)

    def __init__(
        self,
        data_dir: Path = DATA_DIR,
        cache_file: str = "geocode_cache.json",
        save_interval: int = 50,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.cache_path = self.data_dir / cache_file
        self.save_interval = save_interval
        self._lock = threading.Lock()
        self._entries: dict[str, dict] | None = None
        self._pending = 0

    def _load_entries(self) -> dict[str, dict]:
        if self._entries is None:
            self._entries = {}
            if self.cache_path.exists():
                try:
                    data = json.loads(self.cache_path.read_text(encoding="utf-8"))
                except json.JSONDecodeError as e:
                    logger.warning("キャッシュファイルが壊れているため空で開始: %s (%s)", self.cache_path, e)
                else:
                    if isinstance(data, dict):
                        self._entries = data
                    else:
                        logger.warning("キャッシュファイルの形式が不正なため空で開始: %s", self.cache_path)
        return self._entries

    def _save_entries(self) -> None:
        # 原子的書き込み
        tmp_path = self.cache_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(self._load_entries(), ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(self.cache_path)
        self._pending = 0

    def get(self, key: str) -> str | None:
        if key in self.DOCUMENT_KEYS:
            path = self.data_dir / f"{key}.json"
            return path.read_text(encoding="utf-8") if path.exists() else None

        with self._lock:
            entry = self._load_entries().get(key)
        if not isinstance(entry, dict) or "value" not in entry:
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and expires_at <= time.time():
            return None
        return entry["value"]

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        if key in self.DOCUMENT_KEYS:
            path = self.data_dir / f"{key}.json"
            path.write_text(value, encoding="utf-8")
            logger.info("保存: %s", path)
            return

        expires_at = time.time() + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            self._load_entries()[key] = {"value": value, "expires_at": expires_at}
            self._pending += 1
            if self._pending >= self.save_interval:
                self._save_entries()

    def flush(self) -> None:
        """未保存のキャッシュをファイルに書き出す."""
        with self._lock:
            if self._pending:
                self._save_entries()


class SupabaseStore:
    """Supabase の kv_store テーブルに保存する."""

    def get(self, key: str) -> str | None:
        return db.get_value(key)

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        db.put_value(key, value, ttl_seconds)

    def flush(self) -> None:
        pass


def open_store(backend: str = STORAGE_BACKEND, data_dir: Path = DATA_DIR) -> FileStore | SupabaseStore:
    """設定に応じた保存先を返す."""
    if backend == "supabase":
        logger.info("保存先: Supabase")
        return SupabaseStore()
    if backend == "file":
        logger.info("保存先: %s", data_dir)
        return FileStore(data_dir)
    raise ValueError(f"未対応の STORAGE_BACKEND: {backend}")
