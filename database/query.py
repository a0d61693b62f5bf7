"""
Query Compiler for Mirrored Records

Turns a structured request (filter tree, ordering, cursor, facet, limit) into
SQL over the record table without callers writing query text.

Field resolution, in order:
1. Fixed columns (did, uri, indexedAt, cid)       -> ColumnExpression
2. Hot fields configured for the collection        -> IndexedFieldExpression
   (LEFT JOIN record_kv on (uri, key), compared as text)
3. Anything else                                   -> JsonPathExpression
   (json_extract on the raw body, untyped; sorted by a numbers-then-text
   rank before the value so mixed types page consistently)

Pagination is keyset based: the cursor carries the last row's ordering values
and its cid, so pages stay stable while records are inserted concurrently.

Usage:
    compiler = QueryCompiler(db, index_config)
    page = compiler.select('app.test.post', QueryOptions(
        where={'OR': [{'field': 'title', 'equals': 'hi'},
                      {'field': 'lang', 'in': ['en', 'de']}]},
        order_by=[{'field': 'createdAt', 'direction': 'desc'}],
        limit=25,
    ))
    next_page = compiler.select('app.test.post', QueryOptions(
        order_by=[{'field': 'createdAt', 'direction': 'desc'}],
        cursor=page.cursor, limit=25,
    ))
"""

import base64
import binascii
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from core.config import CollectionIndexConfig
from core.logging_config import timed_query

from .facets import normalize_facet_value
from .models import canonical_json, hydrate_row
from .schema import Database

logger = logging.getLogger(__name__)


TABLE_COLUMNS = ('did', 'uri', 'indexedAt', 'cid')
DEFAULT_ORDER = [{'field': 'indexedAt', 'direction': 'asc'}]
CURSOR_SEPARATOR = '|'
CURSOR_ESCAPE = '\\'

# JSON-path cursor values carry their sort rank
NUMBER_PREFIX = 'n'
TEXT_PREFIX = 's'

_FIELD_RE = re.compile(r'^[A-Za-z_$][\w$]*(\.[A-Za-z_$][\w$]*)*$')
_LEAF_OPERATORS = ('equals', 'in', 'contains')


class InvalidConditionError(ValueError):
    """A filter fragment that cannot be compiled."""


class InvalidCursorError(ValueError):
    """A cursor that cannot be applied to the requested ordering."""


# =============================================================================
# Value Helpers
# =============================================================================

def get_path(body: Dict[str, Any], field_name: str) -> Any:
    """Look up a (possibly dotted) field in a record body; None when absent."""
    value: Any = body
    for key in field_name.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
        if value is None:
            return None
    return value


def index_text(value: Any) -> str:
    """
    Text form of a value as stored in record_kv.

    Strings are kept as-is, booleans become true/false, numbers their decimal
    form, objects and arrays compact JSON.
    """
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return canonical_json(value)
    return str(value)


def _sql_value(value: Any) -> Any:
    """Bind form for column / JSON operands; booleans become 0/1."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (dict, list)):
        return canonical_json(value)
    return value


def _escape_like(text: str) -> str:
    return text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


# =============================================================================
# Field Expressions
# =============================================================================

class FieldExpression(ABC):
    """How one field of a record is read inside SQL."""

    def __init__(self, field_name: str):
        self.field = field_name

    @abstractmethod
    def render(self) -> Tuple[str, List[Any]]:
        """SQL operand and its parameters."""

    @abstractmethod
    def cursor_value(self, row, body: Dict[str, Any]) -> str:
        """Text of this field for a result row, as stored in a cursor."""

    def bind(self, value: Any) -> Any:
        """Convert a filter operand to the form compared in SQL."""
        return _sql_value(value)

    def sort_keys(self) -> List[Tuple[str, List[Any]]]:
        """ORDER BY terms for this field, most significant first."""
        sql, params = self.render()
        return [(f"COALESCE({sql}, '')", params)]

    def compare_to_cursor(self, op: str, text: str) -> Tuple[str, List[Any]]:
        """Predicate `sort key <op> cursor value`, consistent with sort_keys()."""
        sql, params = self.sort_keys()[0]
        return f'{sql} {op} ?', params + [text]

    def __repr__(self):
        return f'{type(self).__name__}({self.field!r})'


class ColumnExpression(FieldExpression):
    """A fixed column of the record table."""

    def render(self):
        return f'record."{self.field}"', []

    def cursor_value(self, row, body):
        value = row[self.field]
        return '' if value is None else str(value)


class IndexedFieldExpression(FieldExpression):
    """A hot field read from its record_kv join alias."""

    def __init__(self, field_name: str, alias: str):
        super().__init__(field_name)
        self.alias = alias

    def render(self):
        return f'{self.alias}.value', []

    def bind(self, value):
        return index_text(value)

    def cursor_value(self, row, body):
        value = get_path(body, self.field)
        return '' if value is None else index_text(value)


class JsonPathExpression(FieldExpression):
    """A field extracted from the raw body with json_extract (untyped)."""

    @property
    def path(self) -> str:
        return '$' + ''.join(f'."{segment}"' for segment in self.field.split('.'))

    def render(self):
        return 'json_extract(record.json, ?)', [self.path]

    def rank(self) -> Tuple[str, List[Any]]:
        """0 for numbers and booleans, 1 for text, objects and missing values."""
        return (
            "(CASE WHEN json_type(record.json, ?) IN ('integer', 'real', 'true', 'false') "
            "THEN 0 ELSE 1 END)",
            [self.path]
        )

    def sort_keys(self):
        sql, params = self.render()
        return [self.rank(), (f"COALESCE({sql}, '')", params)]

    def compare_to_cursor(self, op, text):
        # (rank, value) compared as a pair, in the same order ORDER BY uses
        rank, value = parse_typed_cursor_value(text)
        (rank_sql, rank_params), (value_sql, value_params) = self.sort_keys()
        if op == '=':
            return (
                f'({rank_sql} = ? AND {value_sql} = ?)',
                rank_params + [rank] + value_params + [value]
            )
        return (
            f'({rank_sql} {op} ? OR ({rank_sql} = ? AND {value_sql} {op} ?))',
            rank_params + [rank] + rank_params + [rank] + value_params + [value]
        )

    def cursor_value(self, row, body):
        value = get_path(body, self.field)
        if isinstance(value, bool):
            return NUMBER_PREFIX + ('1' if value else '0')
        if isinstance(value, (int, float)):
            return NUMBER_PREFIX + repr(value)
        return TEXT_PREFIX + ('' if value is None else index_text(value))


def parse_typed_cursor_value(text: str) -> Tuple[int, Any]:
    """
    Split a JSON-path cursor value into (rank, operand).

    Raises:
        InvalidCursorError: when the prefix or the number is malformed
    """
    prefix, rest = text[:1], text[1:]
    if prefix == TEXT_PREFIX:
        return 1, rest
    if prefix == NUMBER_PREFIX:
        for parse in (int, float):
            try:
                return 0, parse(rest)
            except ValueError:
                continue
    raise InvalidCursorError(f'Malformed cursor value: {text!r}')


# =============================================================================
# Requests and Results
# =============================================================================

@dataclass
class QueryOptions:
    """
    A structured read over one collection.

    Attributes:
        where: Filter tree. Leaves are {'field', 'equals'|'in'|'contains'};
            nodes are {'AND': [...]}, {'OR': [...]}, {'NOT': {...}}; a list
            means AND.
        order_by: [{'field', 'direction'}]; defaults to indexedAt asc
        cursor: Opaque cursor from a previous page
        limit: Maximum rows; None or <= 0 means unlimited
        facet: {'type': 'tag'|'mention'|'link', 'value': ...}
    """
    where: Any = None
    order_by: Optional[List[Dict[str, str]]] = None
    cursor: Optional[str] = None
    limit: Optional[int] = None
    facet: Optional[Dict[str, str]] = None


@dataclass
class QueryResult:
    """A page of hydrated records and the cursor for the next one."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'items': self.items}
        if self.cursor:
            data['nextCursor'] = self.cursor
        return data


# =============================================================================
# Cursor Encoding
# =============================================================================

def _escape_segment(text: str) -> str:
    return text.replace(CURSOR_ESCAPE, CURSOR_ESCAPE * 2).replace(
        CURSOR_SEPARATOR, CURSOR_ESCAPE + CURSOR_SEPARATOR
    )


def _split_segments(raw: str) -> List[str]:
    """Split on unescaped separators, unescaping each segment."""
    segments = []
    current: List[str] = []
    chars = iter(raw)
    for char in chars:
        if char == CURSOR_ESCAPE:
            current.append(next(chars, ''))
        elif char == CURSOR_SEPARATOR:
            segments.append(''.join(current))
            current = []
        else:
            current.append(char)
    segments.append(''.join(current))
    return segments


def encode_cursor(values: List[str], cid: str) -> str:
    """
    base64 of 'v1|...|vn|cid'.

    A '|' or '\\' inside a segment is backslash-escaped, so values that
    contain the separator still decode to the same position.
    """
    raw = CURSOR_SEPARATOR.join(_escape_segment(part) for part in list(values) + [cid])
    return base64.b64encode(raw.encode('utf-8')).decode('ascii')


def decode_cursor(cursor: str, field_count: int) -> Optional[Tuple[List[str], str]]:
    """
    Decode a cursor into (values, cid).

    Returns None (and logs a warning) when the cursor is undecodable or was
    built for a different number of ordering fields.
    """
    try:
        raw = base64.b64decode(cursor.encode('ascii'), validate=True).decode('utf-8')
    except (binascii.Error, UnicodeError, ValueError, AttributeError) as e:
        logger.warning(f'Invalid cursor format: {e}')
        return None

    parts = _split_segments(raw)
    if len(parts) - 1 != field_count:
        logger.warning(
            "Cursor format doesn't match orderBy fields count",
            extra={'cursor_fields': len(parts) - 1, 'order_fields': field_count}
        )
        return None

    return parts[:-1], parts[-1]


# =============================================================================
# Compiler
# =============================================================================

class _JoinSet:
    """record_kv joins requested while compiling one query."""

    def __init__(self):
        self.aliases: Dict[str, str] = {}

    def alias_for(self, key: str) -> str:
        if key not in self.aliases:
            self.aliases[key] = f'kv{len(self.aliases)}'
        return self.aliases[key]

    def render(self) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []
        for key, alias in self.aliases.items():
            clauses.append(
                f' LEFT JOIN record_kv AS {alias} ON {alias}.uri = record.uri AND {alias}.key = ?'
            )
            params.append(key)
        return ''.join(clauses), params


class QueryCompiler:
    """Builds and runs filtered, ordered, keyset-paginated record queries."""

    def __init__(self, db: Database, index_config: Optional[CollectionIndexConfig] = None):
        """
        Args:
            db: Shared database
            index_config: Hot fields per collection
        """
        self.db = db
        self.index_config = index_config or CollectionIndexConfig()

    # -------------------------------------------------------------------------
    # Field resolution
    # -------------------------------------------------------------------------

    def resolve(self, collection: str, field_name: Any, joins: _JoinSet) -> FieldExpression:
        """
        Pick the extraction variant for a field.

        Raises:
            InvalidConditionError: for names that are not plain (dotted) identifiers
        """
        if not isinstance(field_name, str) or not _FIELD_RE.match(field_name):
            raise InvalidConditionError(f'Invalid field name: {field_name!r}')

        if field_name in TABLE_COLUMNS:
            return ColumnExpression(field_name)
        if self.index_config.is_indexed(collection, field_name):
            return IndexedFieldExpression(field_name, joins.alias_for(field_name))
        return JsonPathExpression(field_name)

    # -------------------------------------------------------------------------
    # WHERE
    # -------------------------------------------------------------------------

    def _leaf(self, collection, condition, joins, params) -> str:
        if 'field' not in condition:
            raise InvalidConditionError("Missing 'field' in condition")

        expr = self.resolve(collection, condition['field'], joins)
        sql, expr_params = expr.render()

        if condition.get('equals') is not None:
            params.extend(expr_params)
            params.append(expr.bind(condition['equals']))
            return f'{sql} = ?'

        if 'in' in condition:
            values = condition['in']
            if not isinstance(values, (list, tuple)):
                raise InvalidConditionError("'in' expects a list")
            if not values:
                return '1 = 0'
            params.extend(expr_params)
            params.extend(expr.bind(v) for v in values)
            return f"{sql} IN ({', '.join('?' for _ in values)})"

        if condition.get('contains') is not None:
            params.extend(expr_params)
            params.append(f"%{_escape_like(str(condition['contains']))}%")
            return f"{sql} LIKE ? ESCAPE '\\'"

        raise InvalidConditionError(
            f"Unsupported condition format (expected one of {', '.join(_LEAF_OPERATORS)})"
        )

    def _combine(self, collection, children, joiner, joins, params) -> Optional[str]:
        if not isinstance(children, (list, tuple)):
            logger.warning(f'Invalid where clause: {joiner.strip()} expects a list')
            return None
        parts = []
        for child in children:
            sql = self._where(collection, child, joins, params)
            if sql:
                parts.append(f'({sql})')
        return joiner.join(parts) if parts else None

    def _where(self, collection, condition, joins, params) -> Optional[str]:
        """
        Compile a filter tree, skipping invalid fragments.

        Parameters of skipped fragments never reach `params`.
        """
        if condition is None:
            return None
        if isinstance(condition, (list, tuple)):
            return self._combine(collection, condition, ' AND ', joins, params)
        if not isinstance(condition, dict):
            logger.warning(f'Invalid where clause: {condition!r}')
            return None
        if 'AND' in condition:
            return self._combine(collection, condition['AND'], ' AND ', joins, params)
        if 'OR' in condition:
            return self._combine(collection, condition['OR'], ' OR ', joins, params)
        if 'NOT' in condition:
            inner = self._where(collection, condition['NOT'], joins, params)
            return f'NOT ({inner})' if inner else None

        leaf_params: List[Any] = []
        try:
            sql = self._leaf(collection, condition, joins, leaf_params)
        except InvalidConditionError as e:
            logger.warning(f'Invalid where clause: {e}', extra={'condition': repr(condition)})
            return None
        params.extend(leaf_params)
        return sql

    # -------------------------------------------------------------------------
    # ORDER BY / cursor
    # -------------------------------------------------------------------------

    def _ordering(self, collection, order_by, joins) -> List[Tuple[FieldExpression, str]]:
        ordering = []
        for clause in (order_by or DEFAULT_ORDER):
            if not isinstance(clause, dict):
                logger.warning(f'Ignoring invalid orderBy entry: {clause!r}')
                continue
            direction = str(clause.get('direction') or 'asc').lower()
            if direction not in ('asc', 'desc'):
                logger.warning(f'Unknown sort direction {direction!r}, using asc')
                direction = 'asc'
            try:
                expr = self.resolve(collection, clause.get('field'), joins)
            except InvalidConditionError as e:
                logger.warning(f'Ignoring orderBy entry: {e}')
                continue
            ordering.append((expr, direction))
        return ordering or [(ColumnExpression('indexedAt'), 'asc')]

    def _cursor_predicate(self, cursor, ordering) -> Tuple[Optional[str], List[Any]]:
        """
        Keyset predicate: rows strictly after the cursor position.

        For fields f0..fn-1 the rows after (v0..vn-1, cid) are
            f0 > v0
            OR (f0 = v0 AND f1 > v1)
            ...
            OR (f0 = v0 AND ... AND fn-1 = vn-1 AND cid > cid0)
        with > replaced by < for descending fields.
        """
        decoded = decode_cursor(cursor, len(ordering))
        if decoded is None:
            return None, []
        values, cursor_cid = decoded

        try:
            return self._keyset(ordering, values, cursor_cid)
        except InvalidCursorError as e:
            logger.warning(f'Ignoring cursor: {e}')
            return None, []

    def _keyset(self, ordering, values, cursor_cid) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []
        for i, (expr, direction) in enumerate(ordering):
            parts = []
            for j in range(i):
                sql, p = ordering[j][0].compare_to_cursor('=', values[j])
                parts.append(sql)
                params.extend(p)
            sql, p = expr.compare_to_cursor('<' if direction == 'desc' else '>', values[i])
            parts.append(sql)
            params.extend(p)
            clauses.append('(' + ' AND '.join(parts) + ')')

        parts = []
        for j, (expr, _) in enumerate(ordering):
            sql, p = expr.compare_to_cursor('=', values[j])
            parts.append(sql)
            params.extend(p)
        cid_op = '<' if ordering[-1][1] == 'desc' else '>'
        parts.append(f'record.cid {cid_op} ?')
        params.append(cursor_cid)
        clauses.append('(' + ' AND '.join(parts) + ')')

        return '(' + ' OR '.join(clauses) + ')', params

    # -------------------------------------------------------------------------
    # Assembly
    # -------------------------------------------------------------------------

    def _facet_filter(self, facet) -> Optional[Tuple[str, str]]:
        if not facet:
            return None
        if isinstance(facet, dict):
            facet_type, value = facet.get('type'), facet.get('value')
        elif isinstance(facet, (list, tuple)) and len(facet) == 2:
            facet_type, value = facet
        else:
            facet_type = value = None
        if not isinstance(facet_type, str) or not isinstance(value, str):
            logger.warning(f'Ignoring invalid facet filter: {facet!r}')
            return None
        return facet_type, normalize_facet_value(facet_type, value)

    def compile_select(self, collection: str, options: QueryOptions) -> Tuple[str, List[Any], List[Tuple[FieldExpression, str]]]:
        """Build the SELECT for a page. Returns (sql, params, ordering)."""
        joins = _JoinSet()

        where_params: List[Any] = []
        where_sql = self._where(collection, options.where, joins, where_params)
        facet = self._facet_filter(options.facet)
        ordering = self._ordering(collection, options.order_by, joins)

        cursor_sql, cursor_params = (None, [])
        if options.cursor:
            cursor_sql, cursor_params = self._cursor_predicate(options.cursor, ordering)

        join_sql, join_params = joins.render()
        if facet:
            join_sql += ' JOIN facet_index ON record.uri = facet_index.uri'

        sql = f'SELECT record.* FROM record{join_sql} WHERE record.collection = ?'
        params: List[Any] = join_params + [collection]

        if facet:
            sql += ' AND facet_index.type = ? AND facet_index.value = ?'
            params.extend(facet)
        if where_sql:
            sql += f' AND ({where_sql})'
            params.extend(where_params)
        if cursor_sql:
            sql += f' AND {cursor_sql}'
            params.extend(cursor_params)

        order_parts = []
        for expr, direction in ordering:
            for key_sql, key_params in expr.sort_keys():
                order_parts.append(f'{key_sql} {direction.upper()}')
                params.extend(key_params)
        order_parts.append(f'record.cid {ordering[-1][1].upper()}')
        sql += ' ORDER BY ' + ', '.join(order_parts)

        if options.limit is not None and options.limit > 0:
            sql += ' LIMIT ?'
            # One extra row tells us whether another page exists
            params.append(int(options.limit) + 1)

        return sql, params, ordering

    def compile_count(self, collection: str, options: QueryOptions) -> Tuple[str, List[Any]]:
        """Build the COUNT with the same joins and filters as compile_select."""
        joins = _JoinSet()

        where_params: List[Any] = []
        where_sql = self._where(collection, options.where, joins, where_params)
        facet = self._facet_filter(options.facet)

        join_sql, join_params = joins.render()
        if facet:
            join_sql += ' JOIN facet_index ON record.uri = facet_index.uri'

        sql = f'SELECT COUNT(*) AS count FROM record{join_sql} WHERE record.collection = ?'
        params: List[Any] = join_params + [collection]

        if facet:
            sql += ' AND facet_index.type = ? AND facet_index.value = ?'
            params.extend(facet)
        if where_sql:
            sql += f' AND ({where_sql})'
            params.extend(where_params)

        return sql, params

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def select(self, collection: str, options: Optional[QueryOptions] = None) -> QueryResult:
        """
        Run a page query.

        Returns:
            QueryResult whose cursor is set only when more rows follow
        """
        options = options or QueryOptions()
        sql, params, ordering = self.compile_select(collection, options)

        with self.db.transaction() as conn:
            rows = timed_query(conn, sql, params, 'getRecords')

        next_cursor = None
        if options.limit is not None and options.limit > 0 and len(rows) > options.limit:
            rows = rows[:options.limit]
            last = rows[-1]
            body = json.loads(last['json'])
            next_cursor = encode_cursor(
                [expr.cursor_value(last, body) for expr, _ in ordering],
                last['cid']
            )

        return QueryResult(items=[hydrate_row(row) for row in rows], cursor=next_cursor)

    def count(self, collection: str, options: Optional[QueryOptions] = None) -> int:
        """Count matching records (ordering and cursor are ignored)."""
        options = options or QueryOptions()
        sql, params = self.compile_count(collection, options)

        with self.db.transaction() as conn:
            row = timed_query(conn, sql, params, 'countRecords', fetch='one')

        return row['count'] if row else 0
