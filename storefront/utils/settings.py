# storefront/utils/settings.py
import os
from dotenv import load_dotenv

load_dotenv()

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
CATALOG_SERVICE_URL = os.getenv("CATALOG_SERVICE_URL", "http://catalog-service:8000")
CATALOG_TIMEOUT_SECONDS = float(os.getenv("CATALOG_TIMEOUT_SECONDS", 2))
CART_NAMESPACE = os.getenv("CART_NAMESPACE", "catalog_cart_v1")
CART_TTL_SECONDS = int(os.getenv("CART_TTL_SECONDS", 30*24*60*60))
WHATSAPP_BASE_URL = os.getenv("WHATSAPP_BASE_URL", "https://wa.me")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
RECONCILE_TIMEOUT_SECONDS = float(os.getenv("RECONCILE_TIMEOUT_SECONDS", 10))
CART_LOCK_TTL_SECONDS = int(os.getenv("CART_LOCK_TTL_SECONDS", 30))
CART_LOCK_WAIT_SECONDS = float(os.getenv("CART_LOCK_WAIT_SECONDS", 12))
