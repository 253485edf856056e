"""
SQL Sandbox: validation of free-text SQL before it reaches the warehouse.

Layers (all must pass):
1. Comment stripping (line and block) so comments cannot smuggle
   keywords or semicolons past the checks below.
2. Statement shape: must start with SELECT or WITH, single statement only.
3. Table allow-list: identifiers after FROM / JOIN (and comma-joined
   FROM lists) must be allow-listed. CTE names are not tables.
4. Keyword blacklist, independent of the shape check.
5. sqlglot AST pass: the parsed statement must be a query expression
   and every physical table it touches must be allow-listed. A
   statement sqlglot cannot parse is rejected.

The regex layers are a second line of defense in front of a warehouse
with its own authorization; they are not a SQL parser.
"""

import logging
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional

import sqlglot
from sqlglot import expressions as exp
from sqlglot.errors import SqlglotError

from ace_assistant.core.errors import SandboxError

logger = logging.getLogger(__name__)

ALLOWED_TABLES: FrozenSet[str] = frozenset({
    "violations",
    "cuny_campus_locations",
    "bus_segment_speeds_2025",
    "bus_segment_speeds_2023_2024",
})

FORBIDDEN_KEYWORDS = (
    "insert", "update", "delete", "drop", "truncate", "alter", "grant",
    "revoke", "create", "attach", "replace", "vacuum", "merge", "call",
    "execute",
)

_FORBIDDEN_PATTERN = re.compile(
    r"\b(" + "|".join(FORBIDDEN_KEYWORDS) + r")\b",
    re.IGNORECASE,
)

# Leftmost token wins, so "--" or "/*" inside any quoting survives and a
# quote inside a comment opens nothing.
_SQL_TOKEN = re.compile(
    r"""
      (?P<dollar>(?<![A-Za-z0-9_$])\$(?P<tag>(?:[A-Za-z_][A-Za-z0-9_]*)?)\$.*?\$(?P=tag)\$)
    | (?P<escape>(?<![A-Za-z0-9_])[eE]'(?:[^'\\]|\\.|'')*')
    | (?P<string>'(?:[^']|'')*')
    | (?P<ident>"(?:[^"]|"")*")
    | (?P<comment>--[^\n]*|/\*.*?(?:\*/|\Z))
    """,
    re.DOTALL | re.VERBOSE,
)
_STRING_TOKENS = ("dollar", "escape", "string")

_STARTS_WITH_QUERY = re.compile(r"^(?:select\b|with\s)", re.IGNORECASE)
_TRAILING_TERMINATORS = re.compile(r"[;\s]+$")

_IDENT_PART = r'(?:"[^"]+"|`[^`]+`|\[[^\]]+\]|[A-Za-z_][A-Za-z0-9_$]*)'
_IDENT_REF = rf"{_IDENT_PART}(?:\s*\.\s*{_IDENT_PART})*"

_TABLE_REF_PATTERN = re.compile(
    rf"\b(from|join)\s+({_IDENT_REF})(\s*\()?",
    re.IGNORECASE,
)
# ", other_table" following a FROM item, with an optional alias in between
_FOLLOWING_REF_PATTERN = re.compile(
    rf"\s*(?:(?:as\s+)?[A-Za-z_][A-Za-z0-9_]*\s*)?,\s*({_IDENT_REF})(\s*\()?",
    re.IGNORECASE,
)
_CTE_NAME_PATTERN = re.compile(
    rf"(?:\bwith(?:\s+recursive)?\s+|,\s*)({_IDENT_PART})\s*(?:\([^)]*\)\s*)?"
    r"as\s*(?:not\s+)?(?:materialized\s*)?\(",
    re.IGNORECASE,
)
_DISTINCT_BEFORE = re.compile(r"\bis\s+(?:not\s+)?distinct\s*$", re.IGNORECASE)
_CALL_NAME = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)\s*$")

# Functions whose argument syntax uses FROM without naming a table
_FROM_SYNTAX_FUNCTIONS = frozenset({"extract", "substring", "trim", "overlay", "position"})

_MUTATING_NODES = (exp.Insert, exp.Update, exp.Delete, exp.Drop, exp.Create, exp.Merge, exp.Command)

PARSE_FAILED_REASON = "Statement could not be parsed."


@dataclass(frozen=True)
class SqlValidationResult:
    """Outcome of one validation. ``normalized_statement`` is set only when ok."""

    ok: bool
    normalized_statement: Optional[str] = None
    reason: Optional[str] = None


def strip_sql_comments(statement: str) -> str:
    """Remove ``--`` and ``/* */`` comments, leaving literals and quoted names intact.

    Understands plain ``'...'``, escape ``E'...'`` and dollar-quoted
    ``$tag$...$tag$`` strings.
    """
    def _replace(match: "re.Match[str]") -> str:
        return " " if match.lastgroup == "comment" else match.group(0)

    return _SQL_TOKEN.sub(_replace, statement)


def _mask_literals(statement: str) -> str:
    """Blank out string literals as ``'   '``, keeping offsets stable."""
    def _replace(match: "re.Match[str]") -> str:
        token = match.group(0)
        if match.lastgroup not in _STRING_TOKENS:
            return token
        return "'" + " " * (len(token) - 2) + "'"

    return _SQL_TOKEN.sub(_replace, statement)


def _normalize_identifier(identifier: str) -> str:
    last = re.split(r"\s*\.\s*", identifier.strip())[-1]
    return last.strip('"`[]').lower()


def _enclosing_call(text: str, position: int) -> Optional[str]:
    """Name of the function whose parentheses enclose ``position``, if any."""
    depth = 0
    for index in range(position - 1, -1, -1):
        char = text[index]
        if char == ")":
            depth += 1
        elif char == "(":
            if depth == 0:
                match = _CALL_NAME.search(text, 0, index)
                return match.group(1).lower() if match else None
            depth -= 1
    return None


def extract_cte_names(statement: str) -> List[str]:
    masked = _mask_literals(statement)
    return [_normalize_identifier(m.group(1)) for m in _CTE_NAME_PATTERN.finditer(masked)]


def extract_table_names(statement: str) -> List[str]:
    """Table identifiers referenced after FROM / JOIN, lower-cased, schema stripped.

    Skips identifiers followed by ``(`` (table functions), FROM used inside
    extract()/substring()-style syntax, ``IS [NOT] DISTINCT FROM`` and names
    declared as CTEs. Order of first appearance, without duplicates.
    """
    masked = _mask_literals(statement)
    cte_names = set(extract_cte_names(masked))
    names: List[str] = []

    def _add(identifier: str) -> None:
        name = _normalize_identifier(identifier)
        if name and name not in cte_names and name not in names:
            names.append(name)

    for match in _TABLE_REF_PATTERN.finditer(masked):
        keyword = match.group(1).lower()
        if keyword == "from":
            if _DISTINCT_BEFORE.search(masked, 0, match.start()):
                continue
            if _enclosing_call(masked, match.start()) in _FROM_SYNTAX_FUNCTIONS:
                continue
        if match.group(3):
            continue
        _add(match.group(2))

        cursor = match.end()
        while True:
            following = _FOLLOWING_REF_PATTERN.match(masked, cursor)
            if not following:
                break
            if not following.group(2):
                _add(following.group(1))
            cursor = following.end()

    return names


def find_forbidden_keywords(statement: str) -> List[str]:
    """Blacklisted keywords present as whole words, in declaration order."""
    found = {m.group(1).lower() for m in _FORBIDDEN_PATTERN.finditer(statement)}
    return [keyword for keyword in FORBIDDEN_KEYWORDS if keyword in found]


class SQLSandbox:
    """
    Validates SQL statements against the table allow-list.

    Used by the runSql tool and the /api/sql endpoint. Both call
    ensure() and only pass the returned normalized statement on.
    """

    def __init__(self, allowed_tables: Iterable[str] = ALLOWED_TABLES, use_ast: bool = True):
        self.allowed_tables = frozenset(t.lower() for t in allowed_tables)
        self.use_ast = use_ast

    def validate(self, statement: Optional[str]) -> SqlValidationResult:
        if statement is None:
            return SqlValidationResult(ok=False, reason="SQL statement required.")

        cleaned = strip_sql_comments(statement).strip()
        if not cleaned:
            return SqlValidationResult(ok=False, reason="SQL statement required.")

        if not _STARTS_WITH_QUERY.match(cleaned):
            return SqlValidationResult(ok=False, reason="Only SELECT statements are allowed.")

        normalized = _TRAILING_TERMINATORS.sub("", cleaned)
        if ";" in normalized:
            return SqlValidationResult(ok=False, reason="Multiple statements are not allowed.")

        offenders = [t for t in extract_table_names(normalized) if t not in self.allowed_tables]
        if offenders:
            return SqlValidationResult(
                ok=False,
                reason=f"Access to table(s) not permitted: {', '.join(offenders)}.",
            )

        forbidden = find_forbidden_keywords(normalized)
        if forbidden:
            return SqlValidationResult(
                ok=False,
                reason=f"Statement contains forbidden keywords: {', '.join(forbidden)}.",
            )

        if self.use_ast:
            ast_error = self._validate_ast(normalized)
            if ast_error:
                return SqlValidationResult(ok=False, reason=ast_error)

        return SqlValidationResult(ok=True, normalized_statement=normalized)

    def ensure(self, statement: Optional[str]) -> str:
        """Return the normalized statement or raise SandboxError."""
        result = self.validate(statement)
        if not result.ok:
            logger.info("sql_rejected", extra={"sql.reason": result.reason})
            raise SandboxError(result.reason)
        return result.normalized_statement

    def _validate_ast(self, statement: str) -> Optional[str]:
        try:
            parsed = sqlglot.parse(statement, read="postgres")
        except SqlglotError as e:
            logger.info("sql_parse_failed", extra={"sql.error": str(e)})
            return PARSE_FAILED_REASON

        statements = [s for s in parsed if s is not None]
        if len(statements) > 1:
            return "Multiple statements are not allowed."

        for node in statements:
            if not isinstance(node, exp.Query) or node.find(*_MUTATING_NODES):
                return "Only SELECT statements are allowed."

            cte_names = {cte.alias_or_name.lower() for cte in node.find_all(exp.CTE)}
            offenders: List[str] = []
            for table in node.find_all(exp.Table):
                # Table functions parse as Table nodes wrapping a call
                if not isinstance(table.this, exp.Identifier):
                    continue
                name = table.name.lower()
                if not name or name in cte_names or name in self.allowed_tables:
                    continue
                if name not in offenders:
                    offenders.append(name)
            if offenders:
                return f"Access to table(s) not permitted: {', '.join(offenders)}."

        return None


_default_sandbox = SQLSandbox()


def validate_select(statement: Optional[str]) -> SqlValidationResult:
    return _default_sandbox.validate(statement)


def ensure_select_allowed(statement: Optional[str]) -> str:
    return _default_sandbox.ensure(statement)
