# crm_assistant/sql_lexer.py
"""
Leitura léxica do SQL com o tokenizador do sqlglot (dialeto PostgreSQL).

O sqlglot anexa os comentários aos tokens vizinhos; aqui o que interessa é o
texto entre um token e o seguinte (os "vãos"), que só pode conter espaço em
branco e comentário. É por eles que o guard acha comentários e palavras
escondidas neles, e é pela posição dos tokens que o executor acha o `$1`
real (fora de literal e de comentário).
"""
from __future__ import annotations

import re
from typing import Iterator, List, Sequence, Tuple

import sqlglot
from sqlglot.errors import TokenError
from sqlglot.tokens import Token, TokenType

from .policy import TENANT_PLACEHOLDER

DIALECT = "postgres"

# Conteúdo de literal ou de identificador entre aspas é dado, não palavra-chave
DATA_TOKENS = frozenset({
    TokenType.STRING,
    TokenType.IDENTIFIER,
    TokenType.NATIONAL_STRING,
    TokenType.RAW_STRING,
    TokenType.HEREDOC_STRING,
    TokenType.BIT_STRING,
    TokenType.BYTE_STRING,
    TokenType.HEX_STRING,
    TokenType.UNICODE_STRING,
})

_WORD_RE = re.compile(r"[^\W\d]\w*")
_PLACEHOLDER_RE = re.compile(re.escape(TENANT_PLACEHOLDER) + r"(?!\d)")

__all__ = [
    "DATA_TOKENS",
    "DIALECT",
    "Token",
    "TokenError",
    "TokenType",
    "gaps",
    "has_comment",
    "identifier_name",
    "placeholder_positions",
    "tokenize",
    "words",
]


def tokenize(sql: str) -> List[Token]:
    """Tokens do `sql`; levanta TokenError com literal ou aspas sem fechamento."""
    return sqlglot.tokenize(sql, read=DIALECT)


def gaps(sql: str, tokens: Sequence[Token]) -> Iterator[Tuple[int, str]]:
    """
    (índice do token seguinte, texto) de cada vão com algo além de espaço.
    O vão depois do último token vem com índice len(tokens).
    """
    cursor = 0
    for i, tok in enumerate(tokens):
        between = sql[cursor:tok.start]
        if between.strip():
            yield i, between
        cursor = tok.end + 1
    tail = sql[cursor:]
    if tail.strip():
        yield len(tokens), tail


def has_comment(text: str, block_only: bool = False) -> bool:
    if block_only:
        return "/*" in text
    return "/*" in text or "--" in text


def words(text: str) -> List[str]:
    return [w.lower() for w in _WORD_RE.findall(text)]


def identifier_name(token: Token) -> str:
    """
    Nome normalizado de um identificador: sem aspas é case-insensitive
    (minúsculo), com aspas é preservado como está.
    """
    if token.token_type == TokenType.IDENTIFIER:
        return token.text
    return token.text.lower()


def placeholder_positions(sql: str, tokens: Sequence[Token]) -> List[int]:
    """Onde começa cada `$1` que é parâmetro de verdade."""
    starts = {t.start for t in tokens if t.token_type not in DATA_TOKENS}
    return [m.start() for m in _PLACEHOLDER_RE.finditer(sql) if m.start() in starts]
