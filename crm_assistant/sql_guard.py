# crm_assistant/sql_guard.py
"""
Guard das consultas propostas pela LLM.

`validate` classifica o texto como seguro ou rejeitado, com exatamente um
código de motivo. As verificações rodam em ordem fixa e param na primeira
falha:

  1. NOT_SELECT                  o texto não começa com SELECT
  2. FORBIDDEN_KEYWORD           verbo proibido como palavra isolada
  3. MISSING_TENANT_SCOPE        nem `$1` nem a coluna organization_id
  4. DISALLOWED_TABLE            relação fora da allowlist (ou nenhuma)
  5. MISSING_OR_EXCESSIVE_LIMIT  sem LIMIT literal <= máximo
  6. SUSPECT_INJECTION_SHAPE     formato de ataque conhecido

As três primeiras são léxicas (tokens do sqlglot). As demais olham a árvore
do sqlglot no dialeto PostgreSQL. Depois das seis, cada relação lida precisa
de `<alias>.organization_id = $1` como termo do AND de topo do WHERE do seu
SELECT (ou do ON do seu próprio JOIN interno/LEFT); senão volta
MISSING_TENANT_SCOPE. Texto que o sqlglot não aceita não tem como ser
garantido e sai como SUSPECT_INJECTION_SHAPE.

Nada aqui executa SQL.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import List, Optional, Sequence

import sqlglot
from pydantic import BaseModel, ConfigDict, model_validator
from sqlglot import exp
from sqlglot.errors import SqlglotError

from .policy import (
    MAX_LIMIT,
    TENANT_COLUMN,
    TENANT_PLACEHOLDER,
    allowed_tables,
    blocked_functions,
    forbidden_keywords,
)
from .sql_lexer import (
    DATA_TOKENS,
    DIALECT,
    Token,
    TokenError,
    TokenType,
    gaps,
    has_comment,
    identifier_name,
    placeholder_positions,
    tokenize,
    words,
)

logger = logging.getLogger(__name__)

# Prefixos de procedures de fornecedor (xp_cmdshell, sp_executesql, pg_sleep...)
_VENDOR_PREFIXES = ("xp_", "sp_", "pg_", "dblink")
_SET_OPERATIONS = (exp.Union, exp.Intersect, exp.Except)
_QUERY_ROOTS = (exp.Select,) + _SET_OPERATIONS
_CONSTANTS = (exp.Literal, exp.Boolean, exp.Null)
_SELECT_RE = re.compile(r"\s*select\b", re.IGNORECASE)
_PARAM_NAME = TENANT_PLACEHOLDER[1:]

MAX_DEPTH = 20


class ReasonCode(str, Enum):
    NOT_SELECT = "NOT_SELECT"
    FORBIDDEN_KEYWORD = "FORBIDDEN_KEYWORD"
    MISSING_TENANT_SCOPE = "MISSING_TENANT_SCOPE"
    DISALLOWED_TABLE = "DISALLOWED_TABLE"
    MISSING_OR_EXCESSIVE_LIMIT = "MISSING_OR_EXCESSIVE_LIMIT"
    SUSPECT_INJECTION_SHAPE = "SUSPECT_INJECTION_SHAPE"


class ValidationVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    safe: bool
    reason: Optional[ReasonCode] = None

    @model_validator(mode="after")
    def _one_reason_when_unsafe(self) -> "ValidationVerdict":
        if self.safe == (self.reason is not None):
            raise ValueError("veredito seguro não tem motivo; rejeitado tem exatamente um")
        return self

    @classmethod
    def ok(cls) -> "ValidationVerdict":
        return cls(safe=True)

    @classmethod
    def reject(cls, reason: ReasonCode) -> "ValidationVerdict":
        return cls(safe=False, reason=reason)


class UnsupportedSql(Exception):
    """Texto fora do subconjunto de SELECT que o guard sabe garantir."""


def validate(sql: str, max_limit: int = MAX_LIMIT) -> ValidationVerdict:
    """Classifica `sql`. Função pura: mesma entrada, mesmo veredito."""
    if not isinstance(sql, str):
        return _reject(ReasonCode.NOT_SELECT, "entrada não é texto")

    try:
        tokens = tokenize(sql)
    except TokenError as e:
        return _validate_untokenized(sql, str(e))

    # 1) SELECT como primeiro token (comentário ou '(' antes já reprova)
    if not tokens or tokens[0].token_type != TokenType.SELECT or sql[:tokens[0].start].strip():
        return _reject(ReasonCode.NOT_SELECT, "não começa com SELECT")

    # 2) verbos proibidos
    keyword = _forbidden_keyword(sql, tokens)
    if keyword:
        return _reject(ReasonCode.FORBIDDEN_KEYWORD, keyword)

    # 3) formato de escopo do tenant presente
    if not _mentions_tenant(sql, tokens):
        return _reject(ReasonCode.MISSING_TENANT_SCOPE, "sem $1 nem organization_id")

    try:
        statements = _parse(sql, tokens)
    except UnsupportedSql as e:
        return _reject(ReasonCode.SUSPECT_INJECTION_SHAPE, f"fora da gramática: {e}")

    # 4) relações
    tables = [t for stmt in statements for t in stmt.find_all(exp.Table)]
    if not tables:
        return _reject(ReasonCode.DISALLOWED_TABLE, "sem cláusula FROM")
    allowed = allowed_tables()
    for table in tables:
        if _relation_name(table) not in allowed:
            return _reject(ReasonCode.DISALLOWED_TABLE, table.sql(dialect=DIALECT))

    # 5) LIMIT literal em cada statement do topo
    for stmt in statements:
        limit = _statement_limit(stmt)
        if limit is None or limit > max_limit:
            return _reject(
                ReasonCode.MISSING_OR_EXCESSIVE_LIMIT,
                f"limit={limit} (máximo {max_limit})",
            )

    # 6) formatos de injeção
    shape = _injection_shape(sql, tokens, statements)
    if shape:
        return _reject(ReasonCode.SUSPECT_INJECTION_SHAPE, shape)

    # filtro do tenant para cada relação lida
    unscoped = _unscoped_relation(statements)
    if unscoped:
        return _reject(
            ReasonCode.MISSING_TENANT_SCOPE,
            f"{unscoped} sem '{TENANT_COLUMN} = {TENANT_PLACEHOLDER}' no WHERE nem no próprio ON",
        )

    return ValidationVerdict.ok()


def _reject(code: ReasonCode, detail: str) -> ValidationVerdict:
    logger.info("SQL rejeitado: %s (%s)", code.value, detail)
    return ValidationVerdict.reject(code)


def _first_line(text: str) -> str:
    return next(iter(text.splitlines()), "")


def _validate_untokenized(sql: str, detail: str) -> ValidationVerdict:
    """Literal ou aspas sem fechamento: todo o texto conta como palavras."""
    if not _SELECT_RE.match(sql):
        return _reject(ReasonCode.NOT_SELECT, "não começa com SELECT")
    found = words(sql)
    forbidden = forbidden_keywords()
    keyword = next((w for w in found if w in forbidden), None)
    if keyword:
        return _reject(ReasonCode.FORBIDDEN_KEYWORD, keyword)
    if TENANT_COLUMN not in found and TENANT_PLACEHOLDER not in sql:
        return _reject(ReasonCode.MISSING_TENANT_SCOPE, "sem $1 nem organization_id")
    return _reject(ReasonCode.SUSPECT_INJECTION_SHAPE, f"não tokeniza: {_first_line(detail)}")


def _parse(sql: str, tokens: Sequence[Token]) -> List[exp.Expression]:
    depth = 0
    for tok in tokens:
        if tok.token_type == TokenType.L_PAREN:
            depth += 1
            if depth > MAX_DEPTH:
                raise UnsupportedSql(f"mais de {MAX_DEPTH} parênteses aninhados")
        elif tok.token_type == TokenType.R_PAREN:
            depth -= 1

    try:
        parsed = sqlglot.parse(sql, read=DIALECT)
    except SqlglotError as e:
        raise UnsupportedSql(_first_line(str(e))) from e
    except RecursionError as e:
        raise UnsupportedSql("aninhamento profundo demais") from e

    # `; -- x` vira um statement vazio só com o comentário
    statements = [s for s in parsed if s is not None and s.key != "semicolon"]
    if not statements:
        raise UnsupportedSql("nenhum statement")
    for stmt in statements:
        if not isinstance(stmt, _QUERY_ROOTS):
            raise UnsupportedSql(f"statement {stmt.key} não é consulta")
    return statements


# ---------- verificações léxicas ----------

def _forbidden_keyword(sql: str, tokens: Sequence[Token]) -> Optional[str]:
    forbidden = forbidden_keywords()
    for tok in tokens:
        # conteúdo de literal / identificador entre aspas é dado, não verbo
        if tok.token_type in DATA_TOKENS:
            continue
        for word in words(tok.text):
            if word in forbidden:
                return word
    # vãos entre tokens só têm comentários
    for _, text in gaps(sql, tokens):
        for word in words(text):
            if word in forbidden:
                return word
    return None


def _mentions_tenant(sql: str, tokens: Sequence[Token]) -> bool:
    if placeholder_positions(sql, tokens):
        return True
    return any(
        tok.token_type in (TokenType.VAR, TokenType.IDENTIFIER)
        and identifier_name(tok) == TENANT_COLUMN
        for tok in tokens
    )


# ---------- verificações na árvore ----------

def _ident(ident: exp.Identifier) -> str:
    return ident.name if ident.quoted else ident.name.lower()


def _relation_name(table: exp.Table) -> Optional[str]:
    """Nome simples da relação; None quando tem schema ou não é um nome."""
    if table.args.get("db") or table.args.get("catalog"):
        return None
    if not isinstance(table.this, exp.Identifier):
        return None
    return _ident(table.this)


def _relation_qualifier(table: exp.Table) -> Optional[exp.Identifier]:
    alias = table.args.get("alias")
    if alias is not None and isinstance(alias.this, exp.Identifier):
        return alias.this
    return table.this if isinstance(table.this, exp.Identifier) else None


def _statement_limit(stmt: exp.Expression) -> Optional[int]:
    node = stmt
    # LIMIT depois de um UNION pode ficar no ramo da direita
    while isinstance(node, _SET_OPERATIONS) and not node.args.get("limit"):
        node = node.expression
    limit = node.args.get("limit")
    if not isinstance(limit, exp.Limit):
        return None
    value = limit.expression
    if isinstance(value, exp.Literal) and not value.is_string and value.this.isdigit():
        return int(value.this)
    return None


def _injection_shape(
    sql: str, tokens: Sequence[Token], statements: Sequence[exp.Expression]
) -> Optional[str]:
    for i, text in gaps(sql, tokens):
        if has_comment(text, block_only=True):
            return "comentário de bloco"
        if i > 0 and tokens[i - 1].token_type == TokenType.SEMICOLON and has_comment(text):
            return "terminador seguido de comentário"
    for tok in tokens:
        if tok.token_type == TokenType.HEX_STRING:
            return f"literal hexadecimal {tok.text[:20]}"
        if tok.token_type not in DATA_TOKENS and tok.text.lower().startswith(_VENDOR_PREFIXES):
            return f"procedure de fornecedor {tok.text}"
    if len(statements) > 1:
        return "statements empilhados"

    blocked = blocked_functions()
    for stmt in statements:
        for node in stmt.walk():
            if isinstance(node, _SET_OPERATIONS):
                return f"operação de conjunto {node.key.upper()}"
            if isinstance(node, exp.HexString):
                return "literal hexadecimal"
            if isinstance(node, exp.Func):
                hit = _function_names(node) & blocked
                if hit:
                    return f"função bloqueada {min(hit)}"
            if isinstance(node, (exp.Parameter, exp.Placeholder)) and node.name != _PARAM_NAME:
                return f"parâmetro desconhecido {node.sql(dialect=DIALECT)}"
            if isinstance(node, exp.Lock):
                return "cláusula de trava"
            if isinstance(node, exp.Select) and node.args.get("into"):
                return "SELECT INTO"
            if _is_tautology(node):
                return f"tautologia {node.sql(dialect=DIALECT)}"
    return None


def _function_names(node: exp.Func) -> set:
    names = {node.sql_name().lower()}
    if isinstance(node, exp.Anonymous):
        names.add(node.name.lower())
    return names


def _is_constant(node: exp.Expression) -> bool:
    return isinstance(node.unnest(), _CONSTANTS)


def _is_tautology(node: exp.Expression) -> bool:
    """`1 = 1`, `'a' = 'a'`, `... OR TRUE`: comparação sem coluna ou OR com constante."""
    if isinstance(node, exp.Or):
        return _is_constant(node.left) or _is_constant(node.right)
    if isinstance(node, exp.Binary) and isinstance(node, exp.Predicate):
        return _is_constant(node.left) and _is_constant(node.right)
    return False


# ---------- escopo do tenant ----------

def _conjuncts(node: Optional[exp.Expression]) -> List[exp.Expression]:
    if node is None:
        return []
    node = node.unnest()
    if isinstance(node, exp.And):
        return _conjuncts(node.left) + _conjuncts(node.right)
    return [node]


def _own_relations(select: exp.Select) -> List[exp.Table]:
    return [t for t in select.find_all(exp.Table) if t.parent_select is select]


def _unscoped_relation(statements: Sequence[exp.Expression]) -> Optional[str]:
    """Primeira relação sem filtro do tenant que a amarre, ou None."""
    for stmt in statements:
        for select in stmt.find_all(exp.Select):
            own = _own_relations(select)
            where = select.args.get("where")
            where_terms = _conjuncts(where.this) if where is not None else []
            for table in own:
                terms = list(where_terms)
                join = table.parent
                # ON só restringe a própria relação em JOIN interno ou LEFT
                if isinstance(join, exp.Join) and join.side in ("", "LEFT"):
                    terms += _conjuncts(join.args.get("on"))
                qualifier = _relation_qualifier(table)
                if qualifier is None or not any(
                    _is_tenant_filter(term, _ident(qualifier), len(own) == 1) for term in terms
                ):
                    return table.sql(dialect=DIALECT)
    return None


def _is_tenant_filter(term: exp.Expression, qualifier: str, sole: bool) -> bool:
    """`alias.organization_id = $1` (em qualquer lado, `$1::tipo` aceito).

    Sem qualificador só vale quando o SELECT lê uma única relação.
    """
    if not isinstance(term, exp.EQ):
        return False
    left, right = term.left.unnest(), term.right.unnest()
    return (_is_tenant_column(left, qualifier, sole) and _is_tenant_param(right)) or (
        _is_tenant_param(left) and _is_tenant_column(right, qualifier, sole)
    )


def _is_tenant_column(node: exp.Expression, qualifier: str, sole: bool) -> bool:
    if not isinstance(node, exp.Column) or node.args.get("db") or node.args.get("catalog"):
        return False
    if not isinstance(node.this, exp.Identifier) or _ident(node.this) != TENANT_COLUMN:
        return False
    table = node.args.get("table")
    if table is None:
        return sole
    return isinstance(table, exp.Identifier) and _ident(table) == qualifier


def _is_tenant_param(node: exp.Expression) -> bool:
    if isinstance(node, exp.Cast):
        node = node.this.unnest()
    return isinstance(node, (exp.Parameter, exp.Placeholder)) and node.name == _PARAM_NAME


# ---------- reescrita (antes da validação) ----------

def ensure_tenant_filter(sql: str) -> str:
    """
    Garante o filtro `organization_id = $1` quando a LLM esqueceu o `$1`.

    Para cada relação de cada SELECT entra `<alias>.organization_id = $1` como
    primeiro termo do WHERE; um WHERE existente vira `filtro AND (original)`,
    então um OR do predicado original não escapa do filtro. O texto sai
    regenerado pelo sqlglot.

    Devolve o texto sem mudança quando já há `$1`, quando há comentário
    (a regeneração o perderia) ou quando não é um único SELECT; o `validate`
    decide depois.
    """
    try:
        tokens = tokenize(sql)
    except TokenError:
        return sql
    if placeholder_positions(sql, tokens):
        return sql
    if any(has_comment(text) for _, text in gaps(sql, tokens)):
        return sql
    try:
        parsed = [s for s in sqlglot.parse(sql, read=DIALECT) if s is not None]
    except SqlglotError:
        return sql
    if len(parsed) != 1 or not isinstance(parsed[0], exp.Select):
        return sql

    tree = parsed[0]
    added = 0
    for select in list(tree.find_all(exp.Select)):
        predicates = []
        for table in _own_relations(select):
            qualifier = _relation_qualifier(table)
            if qualifier is None:
                return sql
            predicates.append(_tenant_predicate(qualifier))
        if not predicates:
            continue
        added += len(predicates)
        where = select.args.get("where")
        if where is not None:
            predicates.append(where.this)
        # sem cópia: os SELECTs internos ainda serão reescritos no lugar
        select.set("where", exp.Where(this=exp.and_(*predicates, copy=False)))

    if not added:
        return sql
    rewritten = tree.sql(dialect=DIALECT)
    logger.info("Filtro de tenant adicionado em %d relação(ões)", added)
    return rewritten


def _tenant_predicate(qualifier: exp.Identifier) -> exp.EQ:
    return exp.EQ(
        this=exp.column(TENANT_COLUMN, table=qualifier.copy()),
        expression=exp.Parameter(this=exp.Literal.number(_PARAM_NAME)),
    )
