import os

from dotenv import load_dotenv

load_dotenv()

# Command/query API
CLINIC_API_URL = os.getenv("CLINIC_API_URL", "http://localhost:3000/api").rstrip("/")
CLINIC_API_TIMEOUT = float(os.getenv("CLINIC_API_TIMEOUT", "30"))
# Extra attempts for idempotent reads only; mutating calls are sent once
CLINIC_READ_RETRIES = int(os.getenv("CLINIC_READ_RETRIES", "2"))
CLINIC_HTTP2 = os.getenv("CLINIC_HTTP2", "1") == "1"

# Serve the command API from the in-memory backend instead of a live server
OFFLINE_MODE = os.getenv("OFFLINE_MODE", "0") == "1"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")
