"""PostgREST error hierarchy.

Kept small and dependency-free so stores can raise them without leaking
httpx.Response objects (or the service key).
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class PostgrestError(Exception):
    """Base error for PostgREST requests."""

    status_code: int
    message: str
    code: str | None = None
    details: str | None = None
    hint: str | None = None

    def __str__(self) -> str:
        bits: list[str] = [f"PostgrestError(status={self.status_code})", self.message]
        if self.code:
            bits.append(f"code={self.code}")
        if self.details:
            bits.append(f"details={self.details}")
        return " ".join(bits)


class PostgrestAuthError(PostgrestError):
    """401/403 auth errors (bad key, RLS)."""


class PostgrestNotFoundError(PostgrestError):
    """404 errors (missing table/view/route)."""


class PostgrestConflictError(PostgrestError):
    """409 conflicts (unique violations)."""
