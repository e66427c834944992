import os

# --- Configuration ---
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "groupbuy")
PRODUCTS_COLL = os.environ.get("PRODUCTS_COLL", "products")
ORDERS_COLL = os.environ.get("ORDERS_COLL", "orders")

# "mongo" or "memory"
BACKEND = os.environ.get("GROUPBUY_BACKEND", "mongo")

RESERVE_TIMEOUT_SECONDS = float(os.environ.get("RESERVE_TIMEOUT_SECONDS", "5"))
ORDER_SUBMIT_ATTEMPTS = int(os.environ.get("ORDER_SUBMIT_ATTEMPTS", "3"))
ORDER_RETRY_BACKOFF = float(os.environ.get("ORDER_RETRY_BACKOFF", "0.05"))
RELEASE_ATTEMPTS = int(os.environ.get("RELEASE_ATTEMPTS", "3"))
# Base sleep between version-conflict retries on the MongoDB ledger
CAS_RETRY_BACKOFF = float(os.environ.get("CAS_RETRY_BACKOFF", "0.005"))

# Fault injection via env (percentage 0-100)
ORDER_STORE_DROP_RATE = int(os.environ.get("ORDER_STORE_DROP_RATE", "0"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

PORT = int(os.environ.get("PORT", "8000"))
