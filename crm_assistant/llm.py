# crm_assistant/llm.py
"""
Cliente do serviço de completions (Ollama, /api/chat).

Falhas do provedor não viram exceção: `chat` devolve um `CompletionResult`
com o tipo do erro, e quem chama decide o fallback.
O texto devolvido é sempre conteúdo de exibição não confiável, nunca código.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel

from .config import OLLAMA_BASE_URL, OLLAMA_MODEL, OLLAMA_TIMEOUT

logger = logging.getLogger(__name__)


class CompletionError(str, Enum):
    TIMEOUT = "TIMEOUT"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    PROVIDER_ERROR = "PROVIDER_ERROR"


class CompletionResult(BaseModel):
    text: Optional[str] = None
    error: Optional[CompletionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: CompletionError) -> "CompletionResult":
        return cls(error=error)


# Assinatura de `chat`; os testes injetam uma implementação falsa
Completer = Callable[..., Awaitable[CompletionResult]]


async def chat(
    messages: list[dict],
    *,
    temperature: float = 0.0,
    timeout: Optional[float] = None,
) -> CompletionResult:
    """
    Chama /api/chat do Ollama e devolve o conteúdo da última mensagem.
    `messages` no formato OpenAI-like: [{"role":"system"|"user"|"assistant","content":"..."}]
    """
    url = f"{OLLAMA_BASE_URL}/api/chat"
    payload = {
        "model": OLLAMA_MODEL,
        "messages": messages,
        "stream": False,
        "options": {"temperature": temperature},
    }
    try:
        async with httpx.AsyncClient(timeout=timeout or OLLAMA_TIMEOUT) as cli:
            r = await cli.post(url, json=payload)
            r.raise_for_status()
            data = r.json()
    except httpx.TimeoutException:
        logger.warning("LLM: timeout em %s", url)
        return CompletionResult.failure(CompletionError.TIMEOUT)
    except httpx.HTTPError as e:
        logger.warning("LLM: falha do provedor (%s)", type(e).__name__)
        return CompletionResult.failure(CompletionError.PROVIDER_ERROR)
    except ValueError:
        logger.warning("LLM: resposta não é JSON")
        return CompletionResult.failure(CompletionError.MALFORMED_RESPONSE)

    # Estrutura típica do Ollama: {"message":{"role":"assistant","content":"..."}}
    message = data.get("message") if isinstance(data, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        logger.warning("LLM: resposta sem conteúdo textual")
        return CompletionResult.failure(CompletionError.MALFORMED_RESPONSE)
    return CompletionResult(text=content)
