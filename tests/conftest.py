import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SHOPIFY_APP_API_KEY", "test_key")
os.environ.setdefault("SHOPIFY_APP_API_SECRET", "test_secret")
os.environ.setdefault("SHOPIFY_APP_SCOPES", "read_products,write_products")
os.environ.setdefault("SHOPIFY_APP_BASE_URL", "https://example.ngrok.app")
os.environ.setdefault("GOLD_SYNC_INTERNAL_API_TOKEN", "operator_token")
os.environ.setdefault("GOLD_SYNC_DB_URL", "sqlite:///./test_gold_price_sync.db")
os.environ.setdefault("GOLD_MULTIPLIER_RULES_PATH", str(ROOT_DIR / "config" / "multiplier_rules.json"))
os.environ.setdefault("GOLD_MATCHING_STRATEGY", "name")
