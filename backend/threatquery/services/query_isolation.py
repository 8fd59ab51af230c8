"""Tenant isolation - the single place the ownership predicate is applied.

Every query that reaches the executor is an ``IsolatedQuery``, and the only
way to obtain one is ``IsolationEnforcer.enforce``.  The enforcer works on
the rendered relational text, so nothing a caller writes in the query can
remove or replace the predicate:

- an existing top-level WHERE gets ``owner = '<principal>' AND`` spliced
  right after the keyword, with the original filter parenthesised when it
  contains a top-level OR;
- without a WHERE, one is inserted before GROUP BY / ORDER BY / LIMIT;
- an identical ownership conjunct already present is dropped first, so the
  predicate appears exactly once and enforcement is idempotent.

The FROM clause must name exactly one catalog entity, optionally aliased;
joins, comma lists, table functions and unknown tables raise
``IsolationError``.  An alias qualifies the predicate column.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from threatquery.config import settings
from threatquery.services.query_diagnostics import ErrorKind
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
    tokenize,
)
from threatquery.services.query_translator import TranslatedQuery
from threatquery.services.schema_catalog import SchemaCatalog, get_catalog

logger = logging.getLogger(__name__)

_ENFORCER_KEY = object()

# Clauses that end a WHERE filter (or mark where a new one must go).
_FILTER_TERMINATORS = (
    "group", "having", "window", "order", "limit", "offset", "fetch",
    "union", "intersect", "except", "for",
)

_ALIAS_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_JOIN_WORDS = frozenset({
    "join", "inner", "left", "right", "full", "outer", "cross", "natural",
    "lateral", "on", "using",
})


@dataclass(frozen=True)
class IsolatedQuery:
    """Relational text carrying the ownership predicate for ``principal_id``."""

    relational_text: str
    principal_id: str
    source: TranslatedQuery
    _key: object = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self._key is not _ENFORCER_KEY:
            raise TypeError("IsolatedQuery instances are created by IsolationEnforcer.enforce()")

    @property
    def isolation_applied(self) -> bool:
        return True


class IsolationError(Exception):
    """The query reads from something the ownership predicate cannot cover."""

    kind = ErrorKind.PERMISSION_DENIED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class IsolationEnforcer:
    def __init__(self, catalog: SchemaCatalog | None = None, owner_column: str | None = None):
        self.catalog = catalog or get_catalog()
        self.owner_column = owner_column or settings.QUERY_OWNER_COLUMN

    def predicate(self, principal_id: str, alias: str | None = None) -> list[Token]:
        column = f"{alias}.{self.owner_column}" if alias else self.owner_column
        return [
            keyword(column),
            Token(TokenKind.OP, "="),
            literal_token(principal_id),
        ]

    def enforce(self, query: TranslatedQuery | IsolatedQuery, principal_id: str) -> IsolatedQuery:
        if not principal_id or not principal_id.strip():
            raise ValueError("A principal id is required to run a query")

        if isinstance(query, IsolatedQuery):
            if query.principal_id == principal_id:
                return query
            query = query.source

        tokens = tokenize(query.relational_text)
        from_at = find_top_level(tokens, "from")
        source_at = from_at + 1
        where_at = find_top_level(tokens, "where", start=source_at)

        alias = None
        if from_at >= 0:
            source_end = self._clause_end(tokens, source_at)
            if 0 <= where_at < source_end:
                source_end = where_at
            alias = self._source_alias(tokens[source_at:source_end], principal_id)
        predicate = self.predicate(principal_id, alias)
        owned = {self.owner_column.lower(), predicate[0].lower}

        if where_at >= 0:
            end = self._clause_end(tokens, where_at + 1)
            scoped = self._combine(predicate, tokens[where_at + 1:end], owned)
            tokens = tokens[:where_at + 1] + scoped + tokens[end:]
        else:
            at = self._clause_end(tokens, source_at)
            tokens = tokens[:at] + [keyword("WHERE")] + predicate + tokens[at:]

        text = render(tokens)
        logger.debug(f"Ownership predicate applied for principal {principal_id}")
        return IsolatedQuery(text, principal_id, query, _ENFORCER_KEY)

    def _source_alias(self, source: list[Token], principal_id: str) -> str | None:
        """Alias of the single catalog entity in a FROM clause, or None.

        Only ``entity``, ``entity alias`` and ``entity AS alias`` are accepted.
        """
        if len(source) == 3 and source[1].is_word("as"):
            source = [source[0], source[2]]
        if not source or len(source) > 2 or any(t.kind is not TokenKind.WORD for t in source):
            logger.warning(f"Rejected multi-source query for principal {principal_id}")
            raise IsolationError("Permission denied: queries must read from a single catalog entity")

        entity = source[0]
        if self.catalog.get(entity.text) is None:
            logger.warning(f"Rejected query on {entity.text!r} for principal {principal_id}")
            raise IsolationError(f"Permission denied: unknown source '{entity.text}'")

        if len(source) == 1:
            return None
        alias = source[1]
        if not _ALIAS_RE.fullmatch(alias.text) or alias.lower in _JOIN_WORDS:
            raise IsolationError("Permission denied: queries must read from a single catalog entity")
        return alias.text

    def _clause_end(self, tokens: list[Token], start: int) -> int:
        end = find_top_level(tokens, *_FILTER_TERMINATORS, start=start)
        if end < 0:
            end = len(tokens)
        for i in range(start, end):
            if tokens[i].is_punct(";"):
                return i
        return end

    def _combine(self, predicate: list[Token], existing: list[Token], owned: set[str]) -> list[Token]:
        # AND operands equal to the predicate are redundant once it is conjoined in front.
        conjuncts = split_top_level(existing, lambda t: t.is_word("and"))
        conjuncts = [c for c in conjuncts if c and not self._is_predicate(c, predicate, owned)]
        if not conjuncts:
            return predicate

        rest = join_with(conjuncts, keyword("AND"))
        if find_top_level(rest, "or") >= 0 and not is_wrapped(rest):
            rest = [Token(TokenKind.PUNCT, "(")] + rest + [Token(TokenKind.PUNCT, ")")]
        return predicate + [keyword("AND")] + rest

    def _is_predicate(self, conjunct: list[Token], predicate: list[Token], owned: set[str]) -> bool:
        while is_wrapped(conjunct):
            conjunct = conjunct[1:-1]
        return (
            len(conjunct) == 3
            and conjunct[0].lower in owned
            and conjunct[1].text in ("=", "==")
            and conjunct[2].text == predicate[2].text
        )
