# crm_assistant/policy.py
"""
Políticas fixas do assistente: tabelas consultáveis, verbos proibidos e
funções bloqueadas.

Carregadas uma vez na importação e nunca alteradas depois; o resto do código
lê apenas pelos acessores abaixo.
"""
from __future__ import annotations

from .config import MAX_LIMIT

# Únicas relações que o assistente pode tocar
ALLOWED_TABLES: frozenset[str] = frozenset({
    "crm_prospects",
    "pipeline_stages",
    "users",
    "crm_events",
    "crm_activities",
})

# Mutação de dados, DDL, controle de sessão/transação e execução procedural
FORBIDDEN_KEYWORDS: frozenset[str] = frozenset({
    "insert", "update", "delete", "merge", "upsert", "replace", "copy",
    "drop", "alter", "create", "truncate", "comment", "reindex", "cluster",
    "grant", "revoke", "set", "lock", "unlock", "vacuum", "analyze",
    "execute", "exec", "call",
})

# Funções que rodam SQL recebido como texto, leem arquivos do servidor ou
# mexem na configuração da sessão
BLOCKED_FUNCTIONS: frozenset[str] = frozenset({
    "query_to_xml", "query_to_json", "query_to_xml_and_xmlschema",
    "table_to_xml", "table_to_xmlschema", "cursor_to_xml",
    "schema_to_xml", "database_to_xml",
    "current_setting", "set_config",
    "lo_import", "lo_export",
    "dblink", "dblink_exec",
    "pg_read_file", "pg_read_binary_file", "pg_ls_dir", "pg_sleep",
})

TENANT_COLUMN = "organization_id"
TENANT_PLACEHOLDER = "$1"

__all__ = [
    "ALLOWED_TABLES",
    "BLOCKED_FUNCTIONS",
    "FORBIDDEN_KEYWORDS",
    "MAX_LIMIT",
    "TENANT_COLUMN",
    "TENANT_PLACEHOLDER",
    "allowed_tables",
    "blocked_functions",
    "forbidden_keywords",
]


def allowed_tables() -> frozenset[str]:
    return ALLOWED_TABLES


def forbidden_keywords() -> frozenset[str]:
    return FORBIDDEN_KEYWORDS


def blocked_functions() -> frozenset[str]:
    return BLOCKED_FUNCTIONS
