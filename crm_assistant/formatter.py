# crm_assistant/formatter.py
"""
Transforma as linhas do resultado em texto para o usuário.

- sem linhas: mensagem fixa, a LLM nem é chamada
- uma linha com um único número: frase pronta (contagens)
- demais casos: a LLM resume; se falhar, lista determinística

Só apresenta: nenhum valor é inventado.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence, Union

from babel.dates import format_date
from babel.numbers import format_currency, format_decimal

from .config import CURRENCY, DISPLAY_ROWS, FORMATTER_TIMEOUT, LOCALE
from .llm import Completer, chat

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

_MONEY_HINTS = ("patrimoine", "revenu", "montant", "amount", "deal_value")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_FR_DATE_RE = re.compile(r"^\d{2}/\d{2}/\d{4}")
_NUMERIC_RE = re.compile(r"^\s*-?\d+(?:\.\d+)?\s*$")

FORMATTER_SYSTEM_PROMPT = """\
Tu es un assistant CRM francais pour conseillers en gestion de patrimoine.

Ta mission: Presenter les resultats de requetes SQL de maniere conversationnelle et professionnelle.

REGLES:
1. Reponds toujours en francais
2. Sois concis mais informatif
3. Mets en valeur les informations cles (nombres, totaux, tendances)
4. Si la liste est longue, resume les points principaux
5. Utilise des formulations naturelles ("Voici les X prospects...", "J'ai trouve Y resultats...")
6. Propose 1-2 questions de suivi pertinentes a la fin
7. N'invente JAMAIS de donnees - base-toi uniquement sur les resultats fournis
8. Formate les montants en euros avec separateurs de milliers
9. Formate les dates en francais (ex: 15 janvier 2026)"""


async def format_response(
    question: str,
    rows: Sequence[Row],
    *,
    completer: Completer = chat,
) -> str:
    if not rows:
        return empty_response(question)

    count_value = _single_number(rows)
    if count_value is not None:
        column = next(iter(rows[0]))
        return count_response(question, column, count_value)

    payload = json.dumps(list(rows), indent=2, default=str, ensure_ascii=False)
    messages = [
        {"role": "system", "content": FORMATTER_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Question de l'utilisateur: \"{question}\"\n\n"
                f"Resultats de la requete ({len(rows)} lignes):\n{payload}\n\n"
                "Formate ces resultats de maniere conversationnelle."
            ),
        },
    ]
    result = await completer(messages, temperature=0.2, timeout=FORMATTER_TIMEOUT)
    if not result.ok:
        logger.warning("Formatação via LLM falhou (%s); usando lista", result.error.value)
        return fallback_response(rows)
    return result.text.strip()


def empty_response(question: str) -> str:
    return (
        f"Je n'ai trouve aucun resultat correspondant a votre recherche \"{question}\".\n\n"
        "Cela peut signifier que:\n"
        "- Il n'y a pas encore de donnees correspondant a ces criteres\n"
        "- Les filtres sont peut-etre trop restrictifs\n\n"
        "Voulez-vous essayer une recherche differente ?"
    )


def count_response(question: str, column: str, value: float) -> str:
    key = column.lower()
    shown = format_decimal(value, locale=LOCALE, decimal_quantization=False)

    if "rdv" in key or "meeting" in key:
        if value == 0:
            return (
                "Aucun RDV trouve pour cette periode.\n\n"
                "Souhaitez-vous consulter les RDV sur une autre periode ?"
            )
        when = "cette semaine" if "semaine" in question.lower() else "programmes"
        return f"Vous avez **{shown} RDV** {when}.\n\nVoulez-vous voir le detail de ces RDV ?"

    if "prospect" in key or key in ("total", "count"):
        if value == 0:
            return (
                "Aucun prospect trouve correspondant a ces criteres.\n\n"
                "Essayez peut-etre avec des criteres moins restrictifs ?"
            )
        plural = "s" if value > 1 else ""
        return (
            f"J'ai trouve **{shown} prospect{plural}** correspondant a votre recherche.\n\n"
            "Voulez-vous voir la liste detaillee ?"
        )

    return f"Le resultat est: **{shown}**"


def fallback_response(rows: Sequence[Row], limit: int = DISPLAY_ROWS) -> str:
    count = len(rows)
    plural = "s" if count > 1 else ""
    lines = [f"Voici les {count} resultat{plural} trouve{plural}:", ""]

    for index, row in enumerate(rows[:limit], start=1):
        values = [
            f"{key}: {format_value(key, value)}"
            for key, value in row.items()
            if value is not None
        ]
        lines.append(f"{index}. {', '.join(values)}")

    if count > limit:
        lines.append("")
        lines.append(f"... et {count - limit} autres resultats.")
    return "\n".join(lines)


def format_value(key: str, value: Any) -> str:
    """Formata um valor isolado para a lista (moeda, número, data)."""
    if isinstance(value, bool):
        return "oui" if value else "non"
    if isinstance(value, (int, float, Decimal)):
        if any(h in key.lower() for h in _MONEY_HINTS):
            return format_currency(
                value, CURRENCY, format="#,##0\xa0¤", locale=LOCALE, currency_digits=False
            )
        return format_decimal(value, locale=LOCALE, decimal_quantization=False)
    parsed = _as_date(value)
    if parsed is not None:
        return format_date(parsed, format="long", locale=LOCALE)
    return str(value)


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    try:
        if _ISO_DATE_RE.match(value):
            return date.fromisoformat(value[:10])
        if _FR_DATE_RE.match(value):
            return datetime.strptime(value[:10], "%d/%m/%Y").date()
    except ValueError:
        # parece data mas não é (ex.: 2026-13-45): mostra como veio
        return None
    return None


def _single_number(rows: Sequence[Row]) -> Optional[Union[int, float, Decimal]]:
    if len(rows) != 1 or len(rows[0]) != 1:
        return None
    value = next(iter(rows[0].values()))
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return value
    if isinstance(value, str) and _NUMERIC_RE.match(value):
        number = Decimal(value.strip())
        return int(number) if number == number.to_integral_value() else number
    return None


def determine_data_type(rows: Sequence[Row]) -> str:
    """'count' (um número só), 'table' (3+ colunas) ou 'list'."""
    if not rows:
        return "list"
    if _single_number(rows) is not None:
        return "count"
    if len(rows[0]) >= 3:
        return "table"
    return "list"
