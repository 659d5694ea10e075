"""Declarative mapping from database integrity errors to domain errors.

Each model declares one table:

    PROFESSIONAL_CONSTRAINTS = ConstraintTable.with_defaults([
        ConstraintRule(UNIQUE_VIOLATION, ErrorKind.CONFLICT,
                       "A professional with that email already exists", pattern="email"),
        ConstraintRule(FOREIGN_KEY_VIOLATION, ErrorKind.VALIDATION,
                       "Organization does not exist", pattern="organizacion"),
    ])

    async def _create(conn):
        with PROFESSIONAL_CONSTRAINTS.translating():
            return await conn.fetchrow(INSERT_SQL, ...)

Rules are checked in order and the first match wins. A rule without a
pattern matches any constraint for its SQLSTATE, so it acts as the fallback
for that state.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import NoReturn

from tenant_scope.kernel.errors import (
    ConflictError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    TenantScopeError,
    UnauthorizedError,
    ValidationError,
)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
CHECK_VIOLATION = "23514"
NOT_NULL_VIOLATION = "23502"
EXCLUSION_VIOLATION = "23P01"

_ERROR_FOR_KIND: dict[ErrorKind, type[TenantScopeError]] = {
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.UNAUTHORIZED: UnauthorizedError,
    ErrorKind.FORBIDDEN: ForbiddenError,
}


@dataclass(frozen=True, slots=True)
class ConstraintRule:
    sqlstate: str
    kind: ErrorKind
    message: str
    pattern: str | None = None
    code: str | None = None

    def build_error(self) -> TenantScopeError:
        error_cls = _ERROR_FOR_KIND.get(self.kind)
        if error_cls is None:
            raise ValueError(f"No domain error for kind {self.kind!r}")
        if self.code:
            return error_cls(message=self.message, code=self.code)
        return error_cls(message=self.message)


DEFAULT_RULES: tuple[ConstraintRule, ...] = (
    ConstraintRule(UNIQUE_VIOLATION, ErrorKind.CONFLICT, "A record with these unique values already exists"),
    ConstraintRule(EXCLUSION_VIOLATION, ErrorKind.CONFLICT, "The record overlaps an existing one"),
    ConstraintRule(FOREIGN_KEY_VIOLATION, ErrorKind.VALIDATION, "A referenced record does not exist"),
    ConstraintRule(CHECK_VIOLATION, ErrorKind.VALIDATION, "The data does not pass the required validations"),
    ConstraintRule(NOT_NULL_VIOLATION, ErrorKind.VALIDATION, "A required value is missing"),
)


class ConstraintTable:
    def __init__(self, rules: Iterable[ConstraintRule]):
        self._rules: tuple[tuple[ConstraintRule, re.Pattern[str] | None], ...] = tuple(
            (rule, re.compile(rule.pattern, re.IGNORECASE) if rule.pattern else None) for rule in rules
        )

    @classmethod
    def with_defaults(cls, rules: Iterable[ConstraintRule] = ()) -> "ConstraintTable":
        """`rules` first, then a generic fallback per integrity SQLSTATE."""
        return cls([*rules, *DEFAULT_RULES])

    def match(self, sqlstate: str | None, constraint_name: str | None) -> ConstraintRule | None:
        if not sqlstate:
            return None
        for rule, pattern in self._rules:
            if rule.sqlstate != sqlstate:
                continue
            if pattern is None:
                return rule
            if constraint_name and pattern.search(constraint_name):
                return rule
        return None

    def translate(self, exc: BaseException) -> TenantScopeError | None:
        """Domain error for a database exception, or None if no rule applies."""
        rule = self.match(
            getattr(exc, "sqlstate", None),
            getattr(exc, "constraint_name", None),
        )
        return rule.build_error() if rule else None

    def raise_for(self, exc: BaseException) -> NoReturn:
        error = self.translate(exc)
        if error is None:
            raise exc
        raise error from exc

    @contextmanager
    def translating(self) -> Iterator[None]:
        """Translate integrity errors raised inside the block."""
        try:
            yield
        except TenantScopeError:
            raise
        except Exception as exc:
            self.raise_for(exc)
