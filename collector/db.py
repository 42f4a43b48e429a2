"""Supabase キーバリューテーブル操作モジュール.

テーブルは SUPABASE_SCHEMA スキーマの kv_store (key, value, expires_at)。
Supabase client のスキーマ指定は .schema() で行う。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from supabase import Client, create_client

from collector.config import SUPABASE_SCHEMA, SUPABASE_SECRET_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

KV_TABLE = "kv_store"

_client: Client | None = None


def _get_client() -> Client:
    global _client
    if _client is None:
        if not SUPABASE_URL or not SUPABASE_SECRET_KEY:
            raise RuntimeError("SUPABASE_URL / SUPABASE_SECRET_KEY が設定されていません")
        _client = create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)
    return _client


def _table(name: str):
    """SUPABASE_SCHEMA スキーマのテーブルを参照する."""
    return _get_client().schema(SUPABASE_SCHEMA).table(name)


def get_value(key: str) -> str | None:
    """キーに対応する値を取得する. 期限切れ・未登録なら None."""
    resp = (
        _table(KV_TABLE)
        .select("value, expires_at")
        .eq("key", key)
        .limit(1)
        .execute()
    )
    if not resp.data:
        return None

    row = resp.data[0]
    expires_at = row.get("expires_at")
    if expires_at and datetime.fromisoformat(expires_at) <= datetime.now(timezone.utc):
        return None
    return row.get("value")


def put_value(key: str, value: str, ttl_seconds: int | None = None) -> None:
    """値を保存する (同じキーは上書き).

    Args:
        ttl_seconds: 有効期間 (秒)。None なら無期限。
    """
    expires_at = None
    if ttl_seconds is not None:
        expires_at = (datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)).isoformat()
    _table(KV_TABLE).upsert(
        {"key": key, "value": value, "expires_at": expires_at},
        on_conflict="key",
    ).execute()
    logger.debug("kv_store に保存: key=%s", key)
