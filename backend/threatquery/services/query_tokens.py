"""Tokenizer shared by the query translator, isolation enforcer and statement guard.

Both surface forms (pipe queries and relational text) are lexed into the
same flat token stream.  Comments are discarded and whitespace is not kept;
``render`` re-joins tokens with normalised spacing, so translating rendered
text again yields the same text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class TokenKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    WORD = "word"
    OP = "op"
    PIPE = "pipe"
    PUNCT = "punct"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str

    @property
    def lower(self) -> str:
        return self.text.lower()

    def is_word(self, *words: str) -> bool:
        return self.kind is TokenKind.WORD and self.text.lower() in words

    def is_punct(self, text: str) -> bool:
        return self.kind is TokenKind.PUNCT and self.text == text


# Quoted literals follow SQL rules: a doubled quote escapes, backslash does not.
# Bracketed and backtick identifiers are single words, whatever they contain.
_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<comment>--[^\n]*|//[^\n]*|/\*.*?\*/)
    | (?P<ident>\[[^\]]*\]|`(?:[^`]|``)*`)
    | (?P<string>'(?:[^']|'')*'|"(?:[^"]|"")*")
    | (?P<number>\d+(?:\.\d+)?[A-Za-z]*)
    | (?P<negword>!(?i:contains|startswith|endswith|has)\b)
    | (?P<word>[A-Za-z_][A-Za-z0-9_.]*)
    | (?P<op>==|!=|<>|>=|<=|=~|[=<>+\-*/%])
    | (?P<pipe>\|)
    | (?P<punct>.)
    """,
    re.VERBOSE | re.DOTALL,
)

_KINDS = {
    "string": TokenKind.STRING,
    "number": TokenKind.NUMBER,
    "ident": TokenKind.WORD,
    "negword": TokenKind.WORD,
    "word": TokenKind.WORD,
    "op": TokenKind.OP,
    "pipe": TokenKind.PIPE,
    "punct": TokenKind.PUNCT,
}

# Words after which "(" starts a parenthesised group rather than a call.
_SPACED_BEFORE_PAREN = frozenset({
    "select", "from", "where", "and", "or", "not", "in", "on", "by",
    "as", "exists", "having", "join", "distinct", "like", "then", "else",
    "when", "case", "between", "is",
})


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    for match in _TOKEN_RE.finditer(text):
        group = match.lastgroup
        if group in ("ws", "comment"):
            continue
        tokens.append(Token(_KINDS[group], match.group()))
    return tokens


def render(tokens: list[Token]) -> str:
    """Join tokens back into query text with single spaces."""
    parts: list[str] = []
    prev: Token | None = None
    for tok in tokens:
        if prev is not None and not _glued(prev, tok):
            parts.append(" ")
        parts.append(tok.text)
        prev = tok
    return "".join(parts)


def _glued(prev: Token, tok: Token) -> bool:
    if tok.kind is TokenKind.PUNCT and tok.text in (",", ")", ";"):
        return True
    if prev.is_punct("("):
        return True
    if tok.is_punct("("):
        return prev.kind is TokenKind.WORD and prev.lower not in _SPACED_BEFORE_PAREN
    return False


# ── Literals ──────────────────────────────────────────────────────────


def sql_literal(value: str) -> str:
    """Single-quoted SQL string literal with embedded quotes doubled."""
    return "'" + value.replace("'", "''") + "'"


def unquote(token: Token) -> str:
    """Value of a quoted string token."""
    text = token.text
    quote = text[0]
    return text[1:-1].replace(quote * 2, quote)


def literal_token(value: str) -> Token:
    return Token(TokenKind.STRING, sql_literal(value))


def keyword(text: str) -> Token:
    return Token(TokenKind.WORD, text)


# ── Structure helpers ─────────────────────────────────────────────────


def depths(tokens: list[Token]) -> list[int]:
    """Parenthesis nesting depth at each token (the opening paren itself is outside)."""
    result = []
    depth = 0
    for tok in tokens:
        if tok.is_punct(")"):
            depth = max(depth - 1, 0)
        result.append(depth)
        if tok.is_punct("("):
            depth += 1
    return result


def find_top_level(tokens: list[Token], *words: str, start: int = 0) -> int:
    """Index of the first depth-0 keyword among *words*, or -1."""
    levels = depths(tokens)
    for i in range(start, len(tokens)):
        if levels[i] == 0 and tokens[i].is_word(*words):
            return i
    return -1


def split_top_level(tokens: list[Token], separator) -> list[list[Token]]:
    """Split on depth-0 tokens for which ``separator(token)`` is true."""
    levels = depths(tokens)
    parts: list[list[Token]] = [[]]
    for tok, level in zip(tokens, levels):
        if level == 0 and separator(tok):
            parts.append([])
        else:
            parts[-1].append(tok)
    return parts


def is_wrapped(tokens: list[Token]) -> bool:
    """True when the whole sequence is one parenthesised group."""
    if len(tokens) < 2 or not tokens[0].is_punct("(") or not tokens[-1].is_punct(")"):
        return False
    levels = depths(tokens)
    return all(level > 0 for level in levels[1:-1]) and levels[-1] == 0


def join_with(parts: list[list[Token]], separator: Token) -> list[Token]:
    joined: list[Token] = []
    for i, part in enumerate(parts):
        if i:
            joined.append(separator)
        joined.extend(part)
    return joined
