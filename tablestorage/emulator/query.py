"""
OData filter evaluator for the in-process table service.

Supports the subset of ``$filter`` produced by ``tablestorage.query``:
- Comparison operators: eq, ne, gt, ge, lt, le
- Logical operators: and, or, not
- Parentheses
- Literals: strings, integers (with optional L suffix), doubles, booleans,
  datetime'..', guid'..', X'..'
"""

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from tablestorage.query import parse_binary_literal, parse_datetime_literal, parse_guid_literal


class ODataParseError(Exception):
    """Raised when OData expression parsing fails."""
    pass


Predicate = Callable[[Dict[str, Any]], bool]

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    | (?P<typed>(?:datetime|guid|X|binary)'[^']*')
    | (?P<string>'(?:[^']|'')*')
    | (?P<number>-?\d+\.\d+(?:[eE][+-]?\d+)?|-?\d+L?)
    | (?P<punct>[(),])
    | (?P<word>[A-Za-z_][A-Za-z0-9_.]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"eq", "ne", "gt", "ge", "lt", "le", "and", "or", "not", "true", "false", "null"}


class ODataFilter:
    """
    OData filter expression parser and evaluator.

    Grammar:
        or_expr   := and_expr ('or' and_expr)*
        and_expr  := primary ('and' primary)*
        primary   := '(' or_expr ')' | 'not' primary | comparison
        comparison:= property op literal | literal op property
    """

    COMPARISON_OPS = {
        'eq': lambda a, b: a == b,
        'ne': lambda a, b: a != b,
        'gt': lambda a, b: a > b,
        'ge': lambda a, b: a >= b,
        'lt': lambda a, b: a < b,
        'le': lambda a, b: a <= b,
    }

    # Operator to use when the literal is on the left
    MIRRORED_OPS = {'eq': 'eq', 'ne': 'ne', 'gt': 'lt', 'ge': 'le', 'lt': 'gt', 'le': 'ge'}

    def __init__(self, filter_expr: str):
        """
        Initialize OData filter.

        Args:
            filter_expr: OData filter expression
        """
        self.filter_expr = filter_expr.strip()
        self.tokens = self._tokenize(self.filter_expr)
        self.pos = 0
        self._parsed_func: Optional[Predicate] = None

    def _tokenize(self, expr: str) -> List[Tuple[str, str]]:
        """
        Tokenize filter expression.

        Args:
            expr: Filter expression string

        Returns:
            List of (kind, text) tokens
        """
        tokens = []
        pos = 0
        while pos < len(expr):
            match = _TOKEN_PATTERN.match(expr, pos)
            if match is None:
                raise ODataParseError(f"Unexpected character at position {pos}: {expr[pos]!r}")
            kind = match.lastgroup
            text = match.group()
            pos = match.end()
            if kind == "ws":
                continue
            if kind == "word" and text.lower() in _KEYWORDS:
                kind = "keyword"
                text = text.lower()
            tokens.append((kind, text))
        return tokens

    def _current_token(self) -> Optional[Tuple[str, str]]:
        """Get current token without consuming."""
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def _consume_token(self) -> Optional[Tuple[str, str]]:
        """Consume and return current token."""
        token = self._current_token()
        if token:
            self.pos += 1
        return token

    def _is_keyword(self, token: Optional[Tuple[str, str]], *words: str) -> bool:
        return token is not None and token[0] == "keyword" and token[1] in words

    def _parse_literal(self, token: Tuple[str, str]) -> Any:
        """
        Parse a literal token.

        Args:
            token: (kind, text) token

        Returns:
            Parsed value (str, int, float, bool, datetime, UUID, bytes, None)
        """
        kind, text = token
        try:
            if kind == "string":
                return text[1:-1].replace("''", "'")
            if kind == "number":
                if text.endswith("L"):
                    return int(text[:-1])
                if "." in text:
                    return float(text)
                return int(text)
            if kind == "typed":
                prefix, _, body = text.partition("'")
                body = body[:-1]
                if prefix == "datetime":
                    return parse_datetime_literal(body)
                if prefix == "guid":
                    return parse_guid_literal(body)
                return parse_binary_literal(body)
        except ValueError as e:
            raise ODataParseError(f"Invalid literal {text}: {e}") from e
        if kind == "keyword" and text in ("true", "false"):
            return text == "true"
        if kind == "keyword" and text == "null":
            return None
        raise ODataParseError(f"Expected literal, got {text!r}")

    def _parse_primary(self) -> Predicate:
        """
        Parse primary expression (comparison, negation or parenthesized expression).

        Returns:
            Evaluation function
        """
        token = self._current_token()

        if token is None:
            raise ODataParseError("Unexpected end of expression")

        if token == ("punct", "("):
            self._consume_token()
            expr = self._parse_or()
            if self._consume_token() != ("punct", ")"):
                raise ODataParseError("Expected closing parenthesis")
            return expr

        if self._is_keyword(token, "not"):
            self._consume_token()
            sub_expr = self._parse_primary()
            return lambda entity: not sub_expr(entity)

        return self._parse_comparison()

    def _parse_comparison(self) -> Predicate:
        """
        Parse comparison expression.

        Returns:
            Evaluation function
        """
        left = self._consume_token()
        op_token = self._consume_token()
        right = self._consume_token()
        if left is None or op_token is None or right is None:
            raise ODataParseError("Incomplete comparison")

        op = op_token[1]
        if op_token[0] != "keyword" or op not in self.COMPARISON_OPS:
            raise ODataParseError(f"Unknown comparison operator: {op}")

        if left[0] == "word":
            prop_name, value = left[1], self._parse_literal(right)
        elif right[0] == "word":
            prop_name, value = right[1], self._parse_literal(left)
            op = self.MIRRORED_OPS[op]
        else:
            raise ODataParseError("Comparison must reference a property")

        comparison_func = self.COMPARISON_OPS[op]

        def evaluate(entity: Dict[str, Any]) -> bool:
            actual = entity.get(prop_name)
            if actual is None or value is None:
                return comparison_func(actual, value) if op in ('eq', 'ne') else False
            if isinstance(actual, datetime) != isinstance(value, datetime):
                return False
            try:
                return comparison_func(actual, value)
            except TypeError:
                return False

        return evaluate

    def _parse_and(self) -> Predicate:
        left = self._parse_primary()

        while self._is_keyword(self._current_token(), "and"):
            self._consume_token()
            right = self._parse_primary()
            left = lambda entity, l=left, r=right: l(entity) and r(entity)

        return left

    def _parse_or(self) -> Predicate:
        left = self._parse_and()

        while self._is_keyword(self._current_token(), "or"):
            self._consume_token()
            right = self._parse_and()
            left = lambda entity, l=left, r=right: l(entity) or r(entity)

        return left

    def parse(self) -> Predicate:
        """
        Parse the complete filter expression.

        Returns:
            Evaluation function that takes entity dict and returns bool
        """
        if not self.filter_expr:
            return lambda entity: True

        self.pos = 0
        result = self._parse_or()

        if self.pos < len(self.tokens):
            raise ODataParseError(f"Unexpected token: {self.tokens[self.pos][1]}")

        return result

    def evaluate(self, entity: Dict[str, Any]) -> bool:
        """
        Evaluate filter against entity.

        Args:
            entity: Entity as dictionary

        Returns:
            True if entity matches filter
        """
        if self._parsed_func is None:
            self._parsed_func = self.parse()
        return self._parsed_func(entity)


class ODataQuery:
    """$filter plus $select for one query execution."""

    def __init__(self, filter_expr: Optional[str] = None, select: Optional[List[str]] = None):
        """
        Initialize OData query.

        Args:
            filter_expr: $filter expression
            select: Properties to project
        """
        self.filter = ODataFilter(filter_expr) if filter_expr else None
        if self.filter is not None:
            # Fail on malformed filters before any row is scanned
            self.filter.evaluate({})
        self.select_props = list(select) if select else None

    def matches(self, entity: Dict[str, Any]) -> bool:
        """True if entity matches the filter (or no filter is set)."""
        if self.filter is None:
            return True
        return self.filter.evaluate(entity)

    def project(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        """
        Project entity to selected properties.

        System properties are always returned.
        """
        if self.select_props is None:
            return entity

        system_props = {'PartitionKey', 'RowKey', 'Timestamp', 'odata.etag', 'etag'}
        return {
            key: value for key, value in entity.items()
            if key in system_props or key in self.select_props
        }
