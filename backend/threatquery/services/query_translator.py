"""Query translator - rewrites analyst queries into relational SQL.

Three surface forms are accepted:

- pipe queries (``incidents | where severity == "critical" | take 10``),
  translated operator by operator into SQL clauses;
- relational text (``SELECT ... FROM ...`` or a bare predicate), passed
  through with token-level operator substitution and a source clause
  added when one is missing;
- structured JSON filters (the "custom" query type).

Translation is structural and permissive: unknown operators are carried
through verbatim and surface as backend errors at execution time.  The only
rejected input is a blank query.  Tenant isolation is NOT applied here, see
``query_isolation``.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from threatquery.config import settings
from threatquery.services.query_tokens import (
    Token,
    TokenKind,
    find_top_level,
    is_wrapped,
    join_with,
    keyword,
    literal_token,
    render,
    split_top_level,
    sql_literal,
    tokenize,
    unquote,
)
from threatquery.services.schema_catalog import SchemaCatalog

logger = logging.getLogger(__name__)


class QueryLanguage(str, Enum):
    KQL = "kql"
    SQL = "sql"
    CUSTOM = "custom"

    @classmethod
    def coerce(cls, value: str | None) -> "QueryLanguage | None":
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class TranslationError(Exception):
    """Query text could not be turned into relational text at all."""

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason


@dataclass(frozen=True)
class TranslatedQuery:
    """Relational text produced by the translator, not yet tenant-scoped."""

    relational_text: str
    language: QueryLanguage
    entity: str

    @property
    def isolation_applied(self) -> bool:
        return False


# ── Expression passes ─────────────────────────────────────────────────
#
# Each pass maps a token list to a new token list and handles one row of
# the operator table.  Pipe predicates go through all of them; relational
# text skips the string pass because double quotes are identifiers there.

_PATTERN_OPS = {
    "contains": ("%", "%"),
    "has": ("%", "%"),
    "startswith": ("", "%"),
    "endswith": ("%", ""),
}

_CONNECTIVES = frozenset({"and", "or", "not"})
_SORT_WORDS = frozenset({"asc", "desc", "nulls", "first", "last"})
_AGGREGATES = frozenset({"count", "sum", "avg", "min", "max"})


def pass_string_literals(tokens: list[Token]) -> list[Token]:
    """Double-quoted literals become single-quoted SQL literals."""
    return [
        literal_token(unquote(t)) if t.kind is TokenKind.STRING and t.text[0] == '"' else t
        for t in tokens
    ]


def pass_comparisons(tokens: list[Token]) -> list[Token]:
    out = []
    for t in tokens:
        if t.kind is TokenKind.OP and t.text in ("==", "=~"):
            out.append(Token(TokenKind.OP, "="))
        elif t.kind is TokenKind.OP and t.text == "!=":
            out.append(Token(TokenKind.OP, "<>"))
        else:
            out.append(t)
    return out


def pass_pattern_match(tokens: list[Token]) -> list[Token]:
    """contains / startswith / endswith become LIKE with wildcards.

    A literal that already carries a ``%`` is left exactly as written.
    """
    out: list[Token] = []
    i = 0
    while i < len(tokens):
        t = tokens[i]
        word = t.lower.lstrip("!") if t.kind is TokenKind.WORD else ""
        if word in _PATTERN_OPS:
            if t.text.startswith("!"):
                out.append(keyword("NOT"))
            out.append(keyword("LIKE"))
            nxt = tokens[i + 1] if i + 1 < len(tokens) else None
            if nxt is not None and nxt.kind is TokenKind.STRING:
                value = unquote(nxt)
                if "%" not in value:
                    prefix, suffix = _PATTERN_OPS[word]
                    value = f"{prefix}{value}{suffix}"
                out.append(literal_token(value))
                i += 2
                continue
        else:
            out.append(t)
        i += 1
    return out


def pass_connectives(tokens: list[Token]) -> list[Token]:
    return [keyword(t.text.upper()) if t.is_word(*_CONNECTIVES) else t for t in tokens]


PIPE_EXPRESSION_PASSES: tuple[Callable[[list[Token]], list[Token]], ...] = (
    pass_string_literals,
    pass_comparisons,
    pass_pattern_match,
    pass_connectives,
)

RELATIONAL_EXPRESSION_PASSES: tuple[Callable[[list[Token]], list[Token]], ...] = (
    pass_comparisons,
    pass_pattern_match,
    pass_connectives,
)


def rewrite_expression(tokens: list[Token], passes=PIPE_EXPRESSION_PASSES) -> list[Token]:
    for rewrite in passes:
        tokens = rewrite(tokens)
    return tokens


# ── Pipe operators ────────────────────────────────────────────────────


@dataclass
class _Clauses:
    """SQL clauses accumulated while walking the pipe segments in order."""

    select: list[Token] | None = None
    distinct: bool = False
    filters: list[list[Token]] = field(default_factory=list)
    group_by: list[Token] | None = None
    order_by: list[Token] | None = None
    limit: Token | None = None
    passthrough: list[list[Token]] = field(default_factory=list)


def _comma() -> Token:
    return Token(TokenKind.PUNCT, ",")


def _items(tokens: list[Token]) -> list[list[Token]]:
    return [item for item in split_top_level(tokens, lambda t: t.is_punct(",")) if item]


def _named_expression(item: list[Token]) -> list[Token]:
    """``name = expr`` (KQL column naming) becomes ``expr AS name``."""
    if (
        len(item) > 2
        and item[0].kind is TokenKind.WORD
        and item[1].kind is TokenKind.OP
        and item[1].text in ("=", "==")
    ):
        return rewrite_expression(item[2:]) + [keyword("AS"), item[0]]
    return rewrite_expression(item)


def _aggregate(item: list[Token]) -> list[Token]:
    out = []
    for i, t in enumerate(item):
        nxt = item[i + 1] if i + 1 < len(item) else None
        if t.is_word(*_AGGREGATES) and nxt is not None and nxt.is_punct("("):
            out.append(keyword(t.text.upper()))
        elif t.is_punct(")") and out and out[-1].is_punct("(") and len(out) > 1 and out[-2].is_word("count"):
            # count() -> COUNT(*)
            out.append(Token(TokenKind.OP, "*"))
            out.append(t)
        else:
            out.append(t)
    return out


def op_project(clauses: _Clauses, args: list[Token]) -> bool:
    if not args:
        return False
    clauses.select = join_with([_named_expression(i) for i in _items(args)], _comma())
    return True


def op_extend(clauses: _Clauses, args: list[Token]) -> bool:
    if not args:
        return False
    base = clauses.select or [Token(TokenKind.OP, "*")]
    extra = [_named_expression(i) for i in _items(args)]
    clauses.select = join_with([base] + extra, _comma())
    return True


def op_where(clauses: _Clauses, args: list[Token]) -> bool:
    if not args:
        return False
    clauses.filters.append(rewrite_expression(args))
    return True


def op_summarize(clauses: _Clauses, args: list[Token]) -> bool:
    by_at = find_top_level(args, "by")
    aggs = args if by_at < 0 else args[:by_at]
    group = [] if by_at < 0 else args[by_at + 1:]
    if not aggs and not group:
        return False
    columns = [rewrite_expression(i) for i in _items(group)]
    measures = [_aggregate(_named_expression(i)) for i in _items(aggs)]
    clauses.select = join_with(columns + measures, _comma())
    if columns:
        clauses.group_by = join_with(columns, _comma())
    return True


def op_take(clauses: _Clauses, args: list[Token]) -> bool:
    if not args or args[0].kind is not TokenKind.NUMBER or not args[0].text.isdigit():
        return False
    clauses.limit = args[0]
    # top N by col [desc]
    if len(args) > 2 and args[1].is_word("by"):
        clauses.order_by = _ordering(args[2:])
    return True


def op_sort(clauses: _Clauses, args: list[Token]) -> bool:
    if len(args) < 2 or not args[0].is_word("by"):
        return False
    clauses.order_by = _ordering(args[1:])
    return True


def op_count(clauses: _Clauses, args: list[Token]) -> bool:
    if args:
        return False
    clauses.select = tokenize("COUNT(*) AS count")
    return True


def op_distinct(clauses: _Clauses, args: list[Token]) -> bool:
    if not args:
        return False
    clauses.select = join_with([rewrite_expression(i) for i in _items(args)], _comma())
    clauses.distinct = True
    return True


def _ordering(tokens: list[Token]) -> list[Token]:
    return [
        keyword(t.text.upper()) if t.is_word(*_SORT_WORDS) else t
        for t in rewrite_expression(tokens)
    ]


PIPE_OPERATORS: dict[str, Callable[[_Clauses, list[Token]], bool]] = {
    "project": op_project,
    "extend": op_extend,
    "where": op_where,
    "filter": op_where,
    "summarize": op_summarize,
    "take": op_take,
    "limit": op_take,
    "top": op_take,
    "sort": op_sort,
    "order": op_sort,
    "count": op_count,
    "distinct": op_distinct,
}

# Clause keywords a source clause must precede.
_AFTER_SOURCE = ("where", "group", "having", "order", "limit", "offset")


class QueryTranslator:
    """Translate raw query text into a ``TranslatedQuery``."""

    def __init__(self, catalog: SchemaCatalog, max_rows: int | None = None):
        self.catalog = catalog
        self.max_rows = max_rows or settings.QUERY_MAX_ROWS

    def translate(self, raw_text: str, language: QueryLanguage | None = None) -> TranslatedQuery:
        text = (raw_text or "").strip()
        if not text:
            raise TranslationError("empty-input", "Query text is empty")

        if language is QueryLanguage.CUSTOM or text.startswith("{"):
            return self._translate_structured(text)

        tokens = tokenize(text)
        if not tokens:
            # comments only
            raise TranslationError("empty-input", "Query text is empty")

        if tokens[0].is_word("select"):
            return self._translate_relational(tokens)
        if any(t.kind is TokenKind.PIPE for t in tokens) or (
            len(tokens) == 1 and tokens[0].kind is TokenKind.WORD
        ):
            return self._translate_pipe(tokens)
        return self._translate_bare(tokens)

    # -- pipe form --------------------------------------------------------

    def _translate_pipe(self, tokens: list[Token]) -> TranslatedQuery:
        segments = split_top_level(tokens, lambda t: t.kind is TokenKind.PIPE)
        head = segments[0]

        entity = self.catalog.default_entity
        if len(head) == 1 and head[0].kind is TokenKind.WORD and head[0].lower not in PIPE_OPERATORS:
            entity = self.catalog.resolve(head[0].text)
            operators = segments[1:]
        else:
            operators = segments

        clauses = _Clauses()
        for segment in operators:
            if not segment:
                continue
            handler = PIPE_OPERATORS.get(segment[0].lower) if segment[0].kind is TokenKind.WORD else None
            if handler is None or not handler(clauses, segment[1:]):
                logger.debug(f"Passing through unrecognised operator: {render(segment)!r}")
                clauses.passthrough.append(rewrite_expression(segment))

        sql = self._assemble(clauses, entity.name)
        return TranslatedQuery(render(sql), QueryLanguage.KQL, entity.name)

    def _assemble(self, clauses: _Clauses, entity: str) -> list[Token]:
        sql = [keyword("SELECT")]
        if clauses.distinct:
            sql.append(keyword("DISTINCT"))
        sql += clauses.select or [Token(TokenKind.OP, "*")]
        sql += [keyword("FROM"), keyword(entity)]

        if clauses.filters:
            filters = clauses.filters
            if len(filters) > 1:
                filters = [_parenthesize_disjunction(f) for f in filters]
            sql.append(keyword("WHERE"))
            sql += join_with(filters, keyword("AND"))
        if clauses.group_by:
            sql += [keyword("GROUP"), keyword("BY")] + clauses.group_by
        if clauses.order_by:
            sql += [keyword("ORDER"), keyword("BY")] + clauses.order_by
        if clauses.limit is not None:
            sql += [keyword("LIMIT"), clauses.limit]
        for fragment in clauses.passthrough:
            sql += fragment
        return sql

    # -- relational form --------------------------------------------------

    def _translate_relational(self, tokens: list[Token]) -> TranslatedQuery:
        tokens = rewrite_expression(tokens, RELATIONAL_EXPRESSION_PASSES)
        from_at = find_top_level(tokens, "from")
        if from_at >= 0 and from_at + 1 < len(tokens):
            entity = tokens[from_at + 1].text
        else:
            entity = self.catalog.default_entity.name
            if from_at < 0:
                tokens = self._insert_source(tokens, entity)
        return TranslatedQuery(render(tokens), QueryLanguage.SQL, entity)

    def _insert_source(self, tokens: list[Token], entity: str) -> list[Token]:
        at = find_top_level(tokens, *_AFTER_SOURCE)
        if at < 0:
            at = len(tokens)
            while at and tokens[at - 1].is_punct(";"):
                at -= 1
        return tokens[:at] + [keyword("FROM"), keyword(entity)] + tokens[at:]

    def _translate_bare(self, tokens: list[Token]) -> TranslatedQuery:
        """Text without pipes or SELECT: a clause tail or a bare predicate."""
        entity = self.catalog.default_entity.name
        if tokens[0].is_word("from"):
            return self._translate_relational([keyword("SELECT"), Token(TokenKind.OP, "*")] + tokens)
        if tokens[0].is_word(*_AFTER_SOURCE):
            head = [keyword(tokens[0].text.upper())] + rewrite_expression(tokens[1:])
            sql = tokenize(f"SELECT * FROM {entity}") + head
        else:
            sql = tokenize(f"SELECT * FROM {entity} WHERE") + rewrite_expression(tokens)
        return TranslatedQuery(render(sql), QueryLanguage.SQL, entity)

    # -- structured form --------------------------------------------------

    def _translate_structured(self, text: str) -> TranslatedQuery:
        try:
            structured = json.loads(text)
        except json.JSONDecodeError as e:
            raise TranslationError(
                "invalid-structured-query", f"Structured query is not valid JSON: {e}"
            ) from e
        if not isinstance(structured, dict):
            raise TranslationError(
                "invalid-structured-query", "Structured query must be a JSON object"
            )

        entity = self.catalog.default_entity
        conditions = []
        for key, value in structured.items():
            if key in ("orderBy", "order", "limit"):
                continue
            column = entity.column(_snake_case(key))
            if column is None:
                continue
            if isinstance(value, list):
                values = [_literal(v) for v in value if _is_scalar(v)]
                if values:
                    conditions.append(f"{column.name} IN ({', '.join(values)})")
            elif _is_scalar(value):
                conditions.append(f"{column.name} = {_literal(value)}")

        order_column = entity.column(_snake_case(str(structured.get("orderBy") or "created_at")))
        direction = "ASC" if str(structured.get("order", "")).lower() == "asc" else "DESC"
        limit = structured.get("limit")
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            limit = self.max_rows

        sql = f"SELECT * FROM {entity.name}"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        if order_column is not None:
            sql += f" ORDER BY {order_column.name} {direction}"
        sql += f" LIMIT {limit}"
        return TranslatedQuery(render(tokenize(sql)), QueryLanguage.CUSTOM, entity.name)


def _parenthesize_disjunction(tokens: list[Token]) -> list[Token]:
    if find_top_level(tokens, "or") < 0 or is_wrapped(tokens):
        return tokens
    return [Token(TokenKind.PUNCT, "(")] + tokens + [Token(TokenKind.PUNCT, ")")]


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def _is_scalar(value) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def _literal(value) -> str:
    if isinstance(value, str):
        return sql_literal(value)
    return repr(value)
