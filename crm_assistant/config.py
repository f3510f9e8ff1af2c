# crm_assistant/config.py
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

# -----------------------------------------------------------------------------
# LLM (Ollama, API /api/chat)
# -----------------------------------------------------------------------------
OLLAMA_BASE_URL: str = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434").rstrip("/")
OLLAMA_MODEL: str = os.getenv("OLLAMA_MODEL", "qwen2.5:7b-instruct")
OLLAMA_TIMEOUT: float = float(os.getenv("OLLAMA_TIMEOUT", "60"))
# a formatação tem fallback determinístico, então o timeout é bem menor
FORMATTER_TIMEOUT: float = float(os.getenv("FORMATTER_TIMEOUT", "20"))

# -----------------------------------------------------------------------------
# Banco (somente leitura)
# -----------------------------------------------------------------------------
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///crm.db")
STATEMENT_TIMEOUT_MS: int = int(os.getenv("STATEMENT_TIMEOUT_MS", "5000"))

# -----------------------------------------------------------------------------
# Assistente
# -----------------------------------------------------------------------------
MAX_LIMIT: int = int(os.getenv("ASSISTANT_MAX_LIMIT", "50"))
DISPLAY_ROWS: int = int(os.getenv("ASSISTANT_DISPLAY_ROWS", "5"))
LOCALE: str = os.getenv("ASSISTANT_LOCALE", "fr_FR")
CURRENCY: str = os.getenv("ASSISTANT_CURRENCY", "EUR")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
