"""Column helpers shared by the ledger models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Type

from sqlalchemy import Enum as SqlEnum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def value_enum(enum_cls: Type[Enum], name: str) -> SqlEnum:
    """Persist enum values (not member names) so rows read like the storefront labels."""

    return SqlEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )
