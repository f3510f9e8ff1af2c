# crm_assistant/nl2sql.py
from __future__ import annotations

"""
Gera o SQL candidato (PostgreSQL) a partir da pergunta do usuário via LLM.
- Saída é SQL puro (apenas SELECT), sem cercas markdown.
- O resultado é só um candidato: quem decide se roda é o sql_guard.
- Saudações e mensagens curtas sem pergunta nem chegam à LLM.
"""

import logging
import re
from typing import Mapping, Optional, Sequence

from .config import MAX_LIMIT
from .llm import Completer, chat
from .policy import TENANT_COLUMN, TENANT_PLACEHOLDER
from .utils import schema_markdown

logger = logging.getLogger(__name__)

HISTORY_TURNS = 4

# ---------- Limpeza da resposta ----------

# Rótulos de cerca que os modelos usam para PostgreSQL
_FENCE_RE = re.compile(
    r"```[ \t]*(?:sql|postgres(?:ql)?|pgsql|psql|requ[eê]te)?[ \t]*\n?(?P<body>[\s\S]*?)```",
    re.IGNORECASE,
)
# "Voici la requete :", "Requete SQL :", "SQL:" no começo da resposta
_PREAMBLE_RE = re.compile(
    r"^\s*(?:voici\s+(?:la\s+)?requ[eê]te(?:\s+sql)?|requ[eê]te(?:\s+sql)?|sql|query)\s*:\s*",
    re.IGNORECASE,
)
# explicação em francês depois do `;` final, separada por linha em branco
_TRAILING_PROSE_RE = re.compile(r";\s*\n\s*\n[\s\S]*$")
_SELECT_START_RE = re.compile(r"\bselect\b", re.IGNORECASE)


def _fenced_sql(text: str) -> Optional[str]:
    """Primeiro bloco cercado que traz um SELECT (o modelo às vezes cerca a explicação)."""
    for m in _FENCE_RE.finditer(text):
        body = m.group("body").strip()
        if _SELECT_START_RE.search(body):
            return body
    return None


def _strip_markdown(text: str) -> str:
    """
    Reduz a resposta da LLM à consulta: bloco cercado (```sql, ```postgresql,
    ```requete), cabeçalho tipo "Voici la requete :", texto antes do SELECT e
    comentário depois do `;` final.
    """
    text = _fenced_sql(text) or text.strip().strip("`")
    text = _PREAMBLE_RE.sub("", text)

    m = _SELECT_START_RE.search(text)
    if m:
        text = text[m.start():]

    text = _TRAILING_PROSE_RE.sub("", text)
    return re.sub(r"[;\s]+$", "", text)


def _looks_like_select(sql: str) -> bool:
    return _SELECT_START_RE.match(sql) is not None


# ---------- Prompting ----------

_SQL_RULES = f"""\
## REGLES OBLIGATOIRES
1. UNIQUEMENT des requetes SELECT (pas de INSERT, UPDATE, DELETE, DROP)
2. TOUJOURS inclure: WHERE {TENANT_COLUMN} = {TENANT_PLACEHOLDER} (le parametre est injecte automatiquement)
3. TOUJOURS ajouter LIMIT (maximum {MAX_LIMIT})
4. Utiliser des ALIAS en francais pour les colonnes du SELECT
5. Comparaisons textuelles insensibles a la casse: LOWER()
6. Dates relatives: NOW(), CURRENT_DATE, INTERVAL
7. Pas de UNION, pas de commentaires, pas de point-virgule

## CORRESPONDANCES
- "prospects chauds" -> qualification = 'chaud' (idem 'tiede', 'froid', 'non_qualifie')
- "sans conseiller" -> assigned_to IS NULL
- "patrimoine", "fortune", "plus riches" -> patrimoine_estime (jamais deal_value)
- "cette semaine" -> >= date_trunc('week', CURRENT_DATE)
- "ce mois" -> >= date_trunc('month', CURRENT_DATE)
- "RDV", "rendez-vous" -> type = 'meeting' dans crm_events

## EXEMPLE
SELECT first_name AS prenom, last_name AS nom, patrimoine_estime AS patrimoine
FROM crm_prospects
WHERE {TENANT_COLUMN} = {TENANT_PLACEHOLDER} AND patrimoine_estime IS NOT NULL
ORDER BY patrimoine_estime DESC
LIMIT 10
"""


def _system_prompt() -> str:
    return (
        "Tu es un expert SQL PostgreSQL pour un CRM de gestion de patrimoine.\n"
        "Convertis la question en UNE requete SELECT valide.\n"
        "Reponds UNIQUEMENT avec la requete SQL, sans markdown ni explication.\n\n"
        "## TABLES DISPONIBLES\n"
        f"{schema_markdown()}\n\n"
        f"{_SQL_RULES}"
    )


def _user_prompt(question: str, history: Sequence[Mapping[str, str]] | None) -> str:
    context = ""
    if history:
        lines = [
            f"{'Utilisateur' if turn.get('role') == 'user' else 'Assistant'}: {turn.get('content', '')}"
            for turn in list(history)[-HISTORY_TURNS:]
        ]
        context = "Contexte de la conversation:\n" + "\n".join(lines) + "\n\n"
    return (
        f"{context}Question de l'utilisateur: \"{question}\"\n\n"
        "Genere la requete SQL PostgreSQL correspondante."
    )


async def question_to_sql(
    question: str,
    history: Sequence[Mapping[str, str]] | None = None,
    *,
    retries: int = 1,
    temperature: float = 0.0,
    completer: Completer = chat,
) -> Optional[str]:
    """
    Gera o SQL candidato para `question`.
    - Limpa cercas/markdown automaticamente.
    - Retorna None se não houver como extrair um SELECT plausível.

    `retries` faz re-tentativas com instrução ainda mais rígida caso a primeira falhe.
    """
    user_prompt = _user_prompt(question, history)

    async def _once(extra_hint: str = "") -> Optional[str]:
        msgs = [
            {"role": "system", "content": _system_prompt() + extra_hint},
            {"role": "user", "content": user_prompt},
        ]
        result = await completer(msgs, temperature=temperature)
        if not result.ok:
            logger.warning("Geração de SQL falhou: %s", result.error.value)
            return None
        sql = _strip_markdown(result.text or "")
        if not sql or not _looks_like_select(sql):
            return None
        return sql

    sql = await _once()
    if sql:
        return sql

    # Re-tentativas, apertando as regras
    for _ in range(max(0, retries)):
        strict = (
            "\nReponds EXACTEMENT par une seule requete commencant par SELECT, "
            "sans point-virgule, sans markdown ni explication."
        )
        sql = await _once(strict)
        if sql:
            return sql

    return None


# ---------- Saudações / mensagens sem pergunta ----------

_GREETINGS = (
    "bonjour", "salut", "hello", "hi", "coucou", "bonsoir", "merci",
    "au revoir", "bye", "ok", "oui", "non", "d'accord", "super", "parfait",
)

_QUERY_WORDS = (
    "montre", "donne", "affiche", "liste", "combien", "trouve", "cherche",
    "quels", "quelles", "qui", "prospects", "rdv", "taches", "conseillers",
    "patrimoine", "revenus", "chaud", "tiede", "froid",
)


def is_greeting_or_non_query(message: str) -> bool:
    msg = message.lower().strip()
    if any(msg == g or msg.startswith(g + " ") for g in _GREETINGS):
        return True
    # muito curta e sem nenhuma palavra de consulta
    return len(msg) < 10 and not any(w in msg for w in _QUERY_WORDS)


def greeting_response(message: str) -> str:
    msg = message.lower().strip()
    if any(g in msg for g in ("bonjour", "salut", "hello")):
        return (
            "Bonjour ! Je suis votre assistant CRM. Je peux vous aider a interroger vos donnees.\n\n"
            "Quelques exemples de questions:\n"
            "- \"Montre moi les prospects chauds\"\n"
            "- \"Combien de RDV cette semaine?\"\n"
            "- \"Prospects sans conseiller assigne\"\n"
            "- \"Top 5 par patrimoine\"\n\n"
            "Comment puis-je vous aider ?"
        )
    if "merci" in msg:
        return "Je vous en prie ! N'hesitez pas si vous avez d'autres questions sur vos prospects."
    if "au revoir" in msg or "bye" in msg:
        return "A bientot ! N'hesitez pas a revenir si vous avez besoin d'aide."
    return "Je suis pret a vous aider ! Posez-moi une question sur vos prospects, RDV ou taches."
