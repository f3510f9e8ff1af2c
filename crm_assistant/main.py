# crm_assistant/main.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlmodel import Session

from .config import LOG_LEVEL
from .db import get_session
from .executor import (
    ExecutionError,
    QueryRejected,
    TenantBindingError,
    TenantContext,
    execute_query,
)
from .formatter import determine_data_type, format_response
from .llm import Completer, chat
from .nl2sql import greeting_response, is_greeting_or_non_query, question_to_sql
from .sql_guard import ReasonCode, ensure_tenant_filter, validate

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Assistant CRM - NL -> SQL", version="1.0")

# -----------------------------------------------------------------------------
# Mensagens ao usuário (o código do motivo vai à parte, em `reason`)
# -----------------------------------------------------------------------------
_REPHRASE = "Pouvez-vous reformuler votre question ?"

REJECTION_MESSAGES: Dict[ReasonCode, str] = {
    ReasonCode.NOT_SELECT: "Je ne peux executer que des recherches (lecture seule).",
    ReasonCode.FORBIDDEN_KEYWORD: "Cette demande modifierait des donnees, ce qui n'est pas autorise.",
    ReasonCode.MISSING_TENANT_SCOPE: "Je n'ai pas pu limiter la recherche a votre organisation.",
    ReasonCode.DISALLOWED_TABLE: "Cette recherche porte sur des donnees auxquelles je n'ai pas acces.",
    ReasonCode.MISSING_OR_EXCESSIVE_LIMIT: "Cette recherche renverrait trop de resultats.",
    ReasonCode.SUSPECT_INJECTION_SHAPE: "Cette requete a ete bloquee par mesure de securite.",
}

AUTH_MESSAGE = "Veuillez vous reconnecter pour utiliser l'assistant."
EMPTY_MESSAGE = "Veuillez poser une question."
GENERATION_MESSAGE = (
    "Je n'ai pas compris votre question. Pouvez-vous la reformuler?\n\n"
    "Exemples de questions:\n"
    "- \"Montre moi les prospects chauds\"\n"
    "- \"Combien de RDV cette semaine?\"\n"
    "- \"Prospects sans conseiller assigne\""
)
EXECUTION_MESSAGE = (
    "Le service de recherche est temporairement indisponible. "
    "Veuillez reessayer avec une question plus simple."
)


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class AskRequest(BaseModel):
    message: str = ""
    history: List[ConversationTurn] = Field(default_factory=list)


class AssistantResponse(BaseModel):
    response: str
    query: Optional[str] = None
    data: Optional[List[Dict[str, Any]]] = None
    data_type: Optional[Literal["table", "count", "list"]] = None
    error: Optional[
        Literal[
            "AUTH_ERROR",
            "INVALID_REQUEST",
            "SQL_GENERATION_ERROR",
            "VALIDATION_ERROR",
            "EXECUTION_ERROR",
        ]
    ] = None
    reason: Optional[ReasonCode] = None


# -----------------------------------------------------------------------------
# Dependências
# -----------------------------------------------------------------------------
class NotAuthenticated(Exception):
    pass


@app.exception_handler(NotAuthenticated)
async def _not_authenticated(_request: Request, _exc: NotAuthenticated) -> JSONResponse:
    body = AssistantResponse(response=AUTH_MESSAGE, error="AUTH_ERROR")
    return JSONResponse(status_code=401, content=body.model_dump(mode="json", exclude_none=True))


def get_tenant(request: Request) -> TenantContext:
    """
    Organização do usuário, gravada em `request.state` pelo middleware de
    autenticação. Sem ela, 401.
    """
    organization_id = getattr(request.state, "organization_id", None)
    if not organization_id:
        raise NotAuthenticated()
    return TenantContext(organization_id=str(organization_id))


def get_completer() -> Completer:
    return chat


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/assistant", response_model=AssistantResponse, response_model_exclude_none=True)
async def assistant(
    payload: AskRequest,
    tenant: TenantContext = Depends(get_tenant),
    session: Session = Depends(get_session),
    completer: Completer = Depends(get_completer),
) -> AssistantResponse:
    """
    Fluxo:
      1) valida a mensagem (saudações respondem direto)
      2) gera o SQL candidato via LLM
      3) garante o filtro do tenant e valida (sql_guard)
      4) executa com o tenant amarrado por parâmetro
      5) formata a resposta
    Casos esperados voltam 200 com `error` preenchido; nenhum texto de erro
    do driver ou do provedor chega ao usuário.
    """
    message = payload.message.strip()
    if not message:
        return AssistantResponse(response=EMPTY_MESSAGE, error="INVALID_REQUEST")

    if is_greeting_or_non_query(message):
        return AssistantResponse(response=greeting_response(message))

    # 1) NL -> SQL
    history = [turn.model_dump() for turn in payload.history]
    sql = await question_to_sql(message, history, completer=completer)
    if not sql:
        return AssistantResponse(response=GENERATION_MESSAGE, error="SQL_GENERATION_ERROR")
    logger.debug("SQL gerado: %s", sql)

    # 2) Guardrail
    sql = ensure_tenant_filter(sql)
    verdict = validate(sql)
    if not verdict.safe:
        logger.warning("SQL recusado para org=%s: %s", tenant.organization_id, verdict.reason.value)
        return AssistantResponse(
            response=f"{REJECTION_MESSAGES[verdict.reason]} {_REPHRASE}",
            error="VALIDATION_ERROR",
            reason=verdict.reason,
        )

    # 3) Execução
    try:
        rows = await run_in_threadpool(execute_query, session, sql, tenant)
    except QueryRejected as e:
        return AssistantResponse(
            response=f"{REJECTION_MESSAGES[e.verdict.reason]} {_REPHRASE}",
            error="VALIDATION_ERROR",
            reason=e.verdict.reason,
        )
    except TenantBindingError:
        reason = ReasonCode.MISSING_TENANT_SCOPE
        return AssistantResponse(
            response=f"{REJECTION_MESSAGES[reason]} {_REPHRASE}",
            error="VALIDATION_ERROR",
            reason=reason,
        )
    except ExecutionError:
        return AssistantResponse(response=EXECUTION_MESSAGE, query=sql, error="EXECUTION_ERROR")

    # 4) Resposta
    text = await format_response(message, rows, completer=completer)
    return AssistantResponse(
        response=text,
        query=sql,
        data=rows,
        data_type=determine_data_type(rows),
    )
