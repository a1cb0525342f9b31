from __future__ import annotations

import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent

DB_PATH = Path(os.getenv("AURAQUEST_DB_PATH", str(PROJECT_ROOT / "data.sqlite3")))
QUEST_PACK = os.getenv("AURAQUEST_QUEST_PACK", "default")

# Generative quest adapter (Gemini generateContent). No key means fallback content only.
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_API_URL = os.getenv(
    "GEMINI_API_URL",
    "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent",
)
AI_TIMEOUT_S = float(os.getenv("AURAQUEST_AI_TIMEOUT_S", "20"))
AI_MAX_ATTEMPTS = int(os.getenv("AURAQUEST_AI_MAX_ATTEMPTS", "3"))

# Remote document store. Empty URL keeps the app in local-only mode.
REMOTE_URL = os.getenv("AURAQUEST_REMOTE_URL", "")
REMOTE_KEY = os.getenv("AURAQUEST_REMOTE_KEY", "")
REMOTE_TIMEOUT_S = float(os.getenv("AURAQUEST_REMOTE_TIMEOUT_S", "10"))
REMOTE_POLL_S = float(os.getenv("AURAQUEST_REMOTE_POLL_S", "15"))

USER_ID = os.getenv("AURAQUEST_USER_ID", "")
USER_NAME = os.getenv("AURAQUEST_USER_NAME", "")
USER_EMAIL = os.getenv("AURAQUEST_USER_EMAIL", "")

SYNC_DEBOUNCE_S = float(os.getenv("AURAQUEST_SYNC_DEBOUNCE_S", "1.0"))
SYNC_MAX_ATTEMPTS = int(os.getenv("AURAQUEST_SYNC_MAX_ATTEMPTS", "3"))
