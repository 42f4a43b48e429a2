"""設定モジュール — 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- 厚労省 (データソース) ---
MHLW_PAGE_URL = os.getenv(
    "MHLW_PAGE_URL",
    "https://www.mhlw.go.jp/stf/kinnkyuuhininnyaku_00005.html",
)

# --- 国土地理院 ジオコーディング API ---
GSI_GEOCODE_API = os.getenv(
    "GSI_GEOCODE_API",
    "https://msearch.gsi.go.jp/address-search/AddressSearch",
)

# --- User-Agent ---
USER_AGENT = "Mozilla/5.0 (compatible; NorlevoPortal/1.0)"

# --- リクエスト設定 ---
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "30"))  # 秒

# --- ジオコーディング ---
GEOCODE_BATCH_SIZE = int(os.getenv("GEOCODE_BATCH_SIZE", "10"))  # 同時リクエスト数
GEOCODE_DELAY_SECONDS = float(os.getenv("GEOCODE_DELAY_SECONDS", "0.1"))  # バッチ間の待機
GEOCODE_LIMIT = int(os.getenv("GEOCODE_LIMIT", "500"))
GEOCODE_ALL = os.getenv("GEOCODE_ALL", "false").lower() == "true"
GEOCODE_CACHE_PREFIX = "geocode:"
GEOCODE_CACHE_TTL = 30 * 24 * 60 * 60  # 30日
PROGRESS_LOG_INTERVAL = 50

# --- Excel ---
HEADER_SCAN_ROWS = 10

# --- 保存先 ---
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.getenv("SUPABASE_SECRET_KEY", "")
SUPABASE_SCHEMA: str = os.getenv("SUPABASE_SCHEMA", "pharmacy_locator")

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "supabase" if SUPABASE_URL else "file")
DATA_DIR = Path(os.getenv("DATA_DIR", str(_PROJECT_ROOT / "public" / "data")))

# KV のキー
KV_PHARMACIES = "pharmacies"
KV_META = "meta"

# --- ログ ---
LOG_DIR = _PROJECT_ROOT / "logs"
LOG_DIR.mkdir(exist_ok=True)
