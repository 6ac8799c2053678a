"""
Centralized configuration for MamaGuard.
Env-based constants, read once at import.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))

# --- WhatsApp webhook ---
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "").strip()

# --- Storage ---
# "memory" keeps everything in-process (dev / tests), "gcs" persists to a bucket
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "")
AUDIO_BUCKET_NAME = os.getenv("AUDIO_BUCKET_NAME", GCS_BUCKET_NAME)

# --- Pipeline queue ---
PIPELINE_MAX_PENDING = int(os.getenv("PIPELINE_MAX_PENDING", "500"))
PIPELINE_MAX_CONCURRENCY = int(os.getenv("PIPELINE_MAX_CONCURRENCY", "8"))
PIPELINE_IDLE_TIMEOUT = int(os.getenv("PIPELINE_IDLE_TIMEOUT", "1800"))

# --- Risk classifier ---
# Optional JSON file with extra phrases per tier, merged at startup
RISK_VOCABULARY_PATH = os.getenv("RISK_VOCABULARY_PATH", "")
