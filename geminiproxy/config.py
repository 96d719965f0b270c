import os

# Downstream (Gemini) endpoint
BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com")
API_VERSION = os.getenv("GEMINI_API_VERSION", "v1beta")
API_CLIENT = os.getenv("GEMINI_API_CLIENT", "geminiproxy/0.1.0")

# Model routing
PRO_MODEL = os.getenv("GEMINI_PRO_MODEL", "gemini-1.5-pro-latest")
FLASH_MODEL = os.getenv("GEMINI_FLASH_MODEL", "gemini-1.5-flash-latest")
HIGH_TIER_MARKER = os.getenv("HIGH_TIER_MARKER", "gpt-4")

UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "60"))
STREAM_CHUNK_SIZE = int(os.getenv("STREAM_CHUNK_SIZE", "1024"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
