"""
Text-level SQL helpers shared by the analyzers.

The engine does not build an AST: every analysis here is pattern based over
the statement text. sqlparse is used to classify statements and to strip
comments before the patterns run.
"""

import re
from typing import Dict, List, Optional, Tuple

import sqlparse

IDENTIFIER = r'[A-Za-z_][A-Za-z0-9_]*'

SELECT_STAR_PATTERN = re.compile(r'\bSELECT\s+\*', re.IGNORECASE)
LIMIT_PATTERN = re.compile(r'\bLIMIT\b', re.IGNORECASE)
TRAILING_LIMIT_PATTERN = re.compile(r'\bLIMIT\s+(\d+)(?:\s+OFFSET\s+\d+)?\s*;?\s*$', re.IGNORECASE)
STRING_LITERAL_PATTERN = re.compile(r"'(?:[^']|'')*'")
LITERAL_OR_COMMENT_PATTERN = re.compile(r"'(?:[^']|'')*'|--[^\n]*|/\*.*?\*/", re.DOTALL)

# Words that can follow FROM/JOIN/WHERE without being identifiers
SQL_KEYWORDS = {
    'SELECT', 'FROM', 'WHERE', 'AND', 'OR', 'NOT', 'EXISTS', 'IN', 'IS', 'NULL',
    'JOIN', 'INNER', 'LEFT', 'RIGHT', 'FULL', 'OUTER', 'CROSS', 'ON', 'USING',
    'GROUP', 'ORDER', 'BY', 'HAVING', 'LIMIT', 'OFFSET', 'UNION', 'ALL',
    'DISTINCT', 'AS', 'CASE', 'WHEN', 'THEN', 'ELSE', 'END', 'LIKE', 'BETWEEN',
    'NATURAL', 'LATERAL', 'WITH', 'TRUE', 'FALSE', 'SET', 'VALUES', 'INTO',
}

_KEYWORD_ALTERNATION = '|'.join(sorted(SQL_KEYWORDS))

# The alias must not be a keyword, otherwise "FROM a JOIN b" would swallow the JOIN
TABLE_REFERENCE_PATTERN = re.compile(
    rf'\b(?:FROM|JOIN)\s+((?:{IDENTIFIER}\.)?{IDENTIFIER})'
    rf'(?:\s+(?:AS\s+)?(?!(?:{_KEYWORD_ALTERNATION})\b)({IDENTIFIER}))?',
    re.IGNORECASE
)

JOIN_CONDITION_PATTERN = re.compile(
    r'\bON\s+(.+?)(?=\b(?:JOIN|INNER|LEFT|RIGHT|FULL|CROSS|NATURAL|WHERE|GROUP|ORDER|HAVING|LIMIT|UNION)\b|\)|$)',
    re.IGNORECASE | re.DOTALL
)


def prepare_for_analysis(query: Optional[str]) -> str:
    """Strip comments and blank out string literals so keywords inside them are not counted."""
    if not query or not query.strip():
        return ""
    stripped = sqlparse.format(query, strip_comments=True)
    return STRING_LITERAL_PATTERN.sub("''", stripped).strip()


def mask_literals_and_comments(query: str) -> str:
    """Blank string literals and comments with spaces, keeping every other character at its position."""
    return LITERAL_OR_COMMENT_PATTERN.sub(lambda match: ' ' * len(match.group(0)), query)


def strip_comments(query: str) -> str:
    return sqlparse.format(query, strip_comments=True).strip()


def statement_type(query: Optional[str]) -> str:
    """Statement type as reported by sqlparse ('SELECT', 'UPDATE', ..., 'UNKNOWN')."""
    if not query or not query.strip():
        return 'UNKNOWN'
    statements = sqlparse.parse(query)
    if not statements:
        return 'UNKNOWN'
    return statements[0].get_type()


def is_select(query: Optional[str]) -> bool:
    return statement_type(query) == 'SELECT'


def count_keyword(query: str, keyword: str) -> int:
    """Count word-bounded occurrences of a (possibly multi-word) keyword."""
    words = r'\s+'.join(re.escape(part) for part in keyword.split())
    return len(re.findall(rf'\b{words}\b', query, re.IGNORECASE))


def has_select_star(query: str) -> bool:
    return SELECT_STAR_PATTERN.search(query) is not None


def has_limit(query: str) -> bool:
    return LIMIT_PATTERN.search(query) is not None


def trailing_limit(query: str) -> Optional[int]:
    """Row cap of a LIMIT clause that ends the statement, if any."""
    match = TRAILING_LIMIT_PATTERN.search(query)
    return int(match.group(1)) if match else None


def table_references(query: str) -> List[Tuple[str, Optional[str]]]:
    """(table, alias) pairs named after FROM and JOIN, in order of appearance."""
    references = []
    for match in TABLE_REFERENCE_PATTERN.finditer(query):
        table = match.group(1)
        if table.upper() in SQL_KEYWORDS:
            continue
        references.append((table, match.group(2)))
    return references


def alias_map(query: str) -> Dict[str, str]:
    """Map of lowercase alias/table name to the table it refers to."""
    aliases = {}
    for table, alias in table_references(query):
        bare_table = table.split('.')[-1]
        aliases.setdefault(bare_table.lower(), bare_table)
        if alias:
            aliases.setdefault(alias.lower(), bare_table)
    return aliases


def find_closing_paren(text: str, open_index: int) -> Optional[int]:
    """Index of the parenthesis closing the one at open_index, or None if unbalanced."""
    depth = 0
    in_string = False
    for index in range(open_index, len(text)):
        char = text[index]
        if char == "'":
            in_string = not in_string
        elif in_string:
            continue
        elif char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
            if depth == 0:
                return index
    return None


def join_conditions(query: str) -> List[str]:
    """Predicate text of every ON clause."""
    return [match.group(1).strip() for match in JOIN_CONDITION_PATTERN.finditer(query)]
