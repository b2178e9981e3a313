"""設定モジュール — 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- Supabase ---
# クライアント生成時に検証する（import 時には必須にしない）
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.getenv("SUPABASE_SECRET_KEY", "")
SUPABASE_SCHEMA: str = os.getenv("SUPABASE_SCHEMA", "mpn_index")

# --- Shopify ---
SHOPIFY_SHOP: str = os.getenv("SHOPIFY_SHOP", "")
SHOPIFY_ACCESS_TOKEN: str = os.getenv("SHOPIFY_ACCESS_TOKEN", "")
SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2024-01")
SHOPIFY_API_SECRET: str = os.getenv("SHOPIFY_API_SECRET", "")

# --- MPN メタフィールド ---
MPN_METAFIELD_NAMESPACE: str = os.getenv("MPN_METAFIELD_NAMESPACE", "custom")
MPN_METAFIELD_KEY: str = os.getenv("MPN_METAFIELD_KEY", "manufacturer_item_number")

# --- リクエスト設定 ---
REQUEST_TIMEOUT = 30  # 秒
REQUEST_MAX_RETRIES = 3
THROTTLE_MIN_AVAILABLE = 100  # 残りクエリコストがこれを下回ったら待機
THROTTLE_WAIT = 2.0  # 秒

# --- 全件同期 ---
PAGE_SIZE = int(os.getenv("SYNC_PAGE_SIZE", "50"))
PAGE_INTERVAL = float(os.getenv("SYNC_PAGE_INTERVAL", "0.1"))  # 秒
BULK_POLL_INTERVAL = float(os.getenv("BULK_POLL_INTERVAL", "5"))  # 秒
BULK_POLL_MAX_ATTEMPTS = int(os.getenv("BULK_POLL_MAX_ATTEMPTS", "120"))
BULK_PROGRESS_EVERY = 250  # 件
PRODUCT_VARIANTS_LIMIT = 100  # Webhook 時のバリアント取得 1 ページあたりの件数

# --- 同期ジョブ ---
SYNC_TYPE_FULL = "full"
STALE_JOB_SECONDS = int(os.getenv("STALE_JOB_SECONDS", "3600"))
WORKER_THREADS = int(os.getenv("WORKER_THREADS", "4"))

# --- 検索 ---
SEARCH_MIN_LENGTH = 2
DEFAULT_SEARCH_LIMIT = 10
SEARCH_MAX_LIMIT = 50

# --- ログ ---
LOG_DIR = Path(os.getenv("LOG_DIR", str(_PROJECT_ROOT / "logs")))
