"""Pre-merge migration linter.

Checks every ``services/<service>/migrations/*.sql`` file for naming
mistakes and for statements that are unsafe to run automatically
against a live database.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Union

from .base import MIGRATION_FILENAME_PATTERN
from .staging import iter_service_migrations

logger = logging.getLogger(__name__)

_LINE_COMMENT = re.compile(r"--.*$", re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)

SQL_RULES = [
    (
        re.compile(r"\bdrop\s+table\b"),
        None,
        "DROP TABLE statements are blocked; use a follow-up migration reviewed manually.",
    ),
    (
        re.compile(r"\btruncate\s+table\b"),
        None,
        "TRUNCATE is not allowed in automated migrations.",
    ),
    (
        re.compile(r"^update\b"),
        re.compile(r"\bwhere\b"),
        "UPDATE statements require a WHERE clause to avoid full-table writes.",
    ),
    (
        re.compile(r"^delete\b"),
        re.compile(r"\bwhere\b"),
        "DELETE statements require a WHERE clause to avoid truncating tables.",
    ),
    (
        re.compile(r"^create\s+index\b"),
        re.compile(r"\bconcurrently\b"),
        "CREATE INDEX must use CONCURRENTLY to prevent table locks.",
    ),
]

_ALTER_TABLE = re.compile(r"^alter\s+table\b")
_DROP_COLUMN = re.compile(r"\bdrop\s+(column|constraint)\b")


@dataclass
class LintIssue:
    """A single lint finding."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


def strip_sql_comments(sql: str) -> str:
    return _BLOCK_COMMENT.sub("", _LINE_COMMENT.sub("", sql))


def is_valid_timestamp(segment: str) -> bool:
    """Check that a ``YYYY-MM-DDTHHMM`` segment is a real UTC minute."""
    try:
        datetime.strptime(segment, "%Y-%m-%dT%H%M")
    except ValueError:
        return False
    return True


def lint_sql(sql: str) -> list[str]:
    """Return rule violations found in a migration's SQL."""
    issues = []
    statements = [s.strip() for s in strip_sql_comments(sql).split(";")]
    for statement in filter(None, statements):
        lower = " ".join(statement.split()).lower()

        for trigger, required, message in SQL_RULES:
            if trigger.search(lower) and (required is None or not required.search(lower)):
                issues.append(message)

        if _ALTER_TABLE.search(lower) and _DROP_COLUMN.search(lower):
            issues.append(
                "ALTER TABLE ... DROP COLUMN/CONSTRAINT is blocked; "
                "use expansion + contract strategy."
            )
    return issues


def lint_services(services_dir: Union[str, Path]) -> list[LintIssue]:
    """Lint every service's migrations.

    Returns:
        All issues found (empty when everything passes)
    """
    root = Path(services_dir)
    if not root.is_dir():
        return [LintIssue(str(root), "Unable to locate services directory")]

    issues: list[LintIssue] = []
    seen: set[str] = set()

    for service, path in iter_service_migrations(root):
        relative = f"services/{service}/migrations/{path.name}"
        match = MIGRATION_FILENAME_PATTERN.match(path.name)
        if not match:
            issues.append(
                LintIssue(
                    relative,
                    "filename must match YYYY-MM-DDThhmm__service__description.sql "
                    "using lowercase letters, numbers, or dashes.",
                )
            )
            continue

        if match.group("service") != service:
            issues.append(
                LintIssue(
                    relative,
                    f'service segment "{match.group("service")}" must match '
                    f'directory name "{service}".',
                )
            )

        if not is_valid_timestamp(match.group("timestamp")):
            issues.append(
                LintIssue(
                    relative,
                    f'timestamp segment "{match.group("timestamp")}" is not a valid UTC time.',
                )
            )

        if path.name in seen:
            issues.append(
                LintIssue(relative, "duplicate migration filename detected across services.")
            )
        else:
            seen.add(path.name)

        for message in lint_sql(path.read_text(encoding="utf-8")):
            issues.append(LintIssue(relative, message))

    logger.debug(f"Lint found {len(issues)} issue(s) under {root}")
    return issues
