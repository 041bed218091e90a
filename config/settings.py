import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# -----------------------------
# Base paths
# -----------------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # project root

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "log")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "xen-gateway.log"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_TO_STDOUT = os.getenv("LOG_TO_STDOUT", "false").lower() == "true"

# -----------------------------
# HTTP server
# -----------------------------
HOST = os.getenv("HOST", "0.0.0.0")
DEFAULT_PORT = 3000
# validated by main.resolve_port() at startup
PORT = os.getenv("PORT", str(DEFAULT_PORT))

# Basic auth for mutating endpoints. An empty password rejects every request.
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

# -----------------------------
# Rate limiting
# -----------------------------
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_WINDOW_MINUTES = int(os.getenv("RATE_LIMIT_WINDOW_MINUTES", "15"))
RATE_LIMIT = f"{RATE_LIMIT_MAX_REQUESTS} per {RATE_LIMIT_WINDOW_MINUTES} minutes"

# -----------------------------
# Hypervisor / XenAPI
# -----------------------------
# examples:
#   xcp-ng.lab.local
#   https://10.0.0.5
XEN_HOST = os.getenv("XEN_HOST", "")
XEN_USERNAME = os.getenv("XEN_USERNAME", "")
XEN_PASSWORD = os.getenv("XEN_PASSWORD", "")
XEN_VERIFY_SSL = os.getenv("XEN_VERIFY_SSL", "true").lower() == "true"

# 0 opens a fresh session for every operation; >0 keeps a pool of that size
XEN_SESSION_POOL_SIZE = int(os.getenv("XEN_SESSION_POOL_SIZE", "0"))
XEN_SESSION_CHECKOUT_TIMEOUT = float(os.getenv("XEN_SESSION_CHECKOUT_TIMEOUT", "30"))

# -----------------------------
# Metrics / monitoring
# -----------------------------
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
