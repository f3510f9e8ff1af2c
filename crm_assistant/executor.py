# crm_assistant/executor.py
"""
Execução da consulta já validada, com o tenant amarrado por parâmetro.

O `$1` do SQL vira o bind `:organization_id` do SQLAlchemy e o valor vem do
contexto autenticado, nunca do texto gerado pela LLM.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .policy import MAX_LIMIT, TENANT_COLUMN, TENANT_PLACEHOLDER
from .sql_guard import ValidationVerdict, validate
from .sql_lexer import placeholder_positions, tokenize

logger = logging.getLogger(__name__)

BIND_NAME = TENANT_COLUMN
# `:nome` que o text() do SQLAlchemy leria como bind
_BIND_LIKE_RE = re.compile(r"(?<![:\w\\]):(?=\w)")
# `$1` com o cast opcional do PostgreSQL (`$1::uuid`, `$1::varchar(36)`)
_PLACEHOLDER_CAST_RE = re.compile(
    re.escape(TENANT_PLACEHOLDER)
    + r"(?:\s*::\s*(?P<type>[A-Za-z_]\w*(?:\s*\(\s*\d+(?:\s*,\s*\d+)?\s*\))?))?"
)


class TenantContext(BaseModel):
    """Organização do usuário autenticado."""
    model_config = ConfigDict(frozen=True)

    organization_id: str

    @field_validator("organization_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("organization_id vazio")
        return v


class ExecutionError(Exception):
    """Falha ao executar a consulta; o texto do driver fica só no log."""


class QueryRejected(ExecutionError):
    def __init__(self, verdict: ValidationVerdict):
        self.verdict = verdict
        super().__init__(f"consulta recusada: {verdict.reason.value}")


class TenantBindingError(ExecutionError):
    """A consulta não tem o `$1` onde amarrar o tenant."""


def bind_tenant_placeholder(sql: str) -> str:
    """
    Troca cada `$1` real por `:organization_id`; `$1::tipo` vira
    `CAST(:organization_id AS tipo)`, já que o text() do SQLAlchemy não lê um
    bind colado em `::`.

    O resto do texto é copiado como está, só com `:` escapado, para que nada
    dentro de literais ou comentários vire bind.
    """
    positions = placeholder_positions(sql, tokenize(sql))
    if not positions:
        raise TenantBindingError(f"consulta sem {TENANT_PLACEHOLDER}")

    parts: List[str] = []
    cursor = 0
    for pos in positions:
        parts.append(_BIND_LIKE_RE.sub(r"\\:", sql[cursor:pos]))
        m = _PLACEHOLDER_CAST_RE.match(sql, pos)
        if m.group("type"):
            parts.append(f"CAST(:{BIND_NAME} AS {m.group('type')})")
        else:
            parts.append(f":{BIND_NAME}")
        cursor = m.end()
    parts.append(_BIND_LIKE_RE.sub(r"\\:", sql[cursor:]))
    return "".join(parts)


def execute_query(
    session: Session,
    sql: str,
    tenant: TenantContext,
    max_rows: int = MAX_LIMIT,
) -> List[Dict[str, Any]]:
    """
    Valida de novo, amarra o tenant e devolve no máximo `max_rows` linhas
    como dicionários.
    """
    verdict = validate(sql)
    if not verdict.safe:
        raise QueryRejected(verdict)

    bound_sql = bind_tenant_placeholder(sql)
    logger.debug("Executando SQL: %s", bound_sql)
    try:
        result = session.connection().execute(
            text(bound_sql), {BIND_NAME: tenant.organization_id}
        )
        rows = result.mappings().fetchmany(max_rows)
    except SQLAlchemyError as e:
        logger.error("Erro ao executar SQL (%s): %s", type(e).__name__, e)
        raise ExecutionError("falha ao executar a consulta") from e
    return [dict(r) for r in rows]
