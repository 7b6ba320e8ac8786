"""
Shared helpers for the contact sync Postgres repositories.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError
from app.features.contact_sync.domain import IdentityConflictError, PersistenceError, SenderIdentity
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

IDENTITY_UNIQUE_CONSTRAINTS = {"uq_identity_platform_id", "uq_identity_contact_platform"}


@contextmanager
def persistence_errors(operation: str) -> Iterator[None]:
    """Translate database failures into PersistenceError for the service layer."""
    try:
        yield
    except DatabaseError as e:
        logger.warning("Contact sync store operation failed", operation=operation, error=str(e))
        raise PersistenceError(str(e), operation=operation, recoverable=e.recoverable) from e
    except psycopg.Error as e:
        logger.warning("Contact sync store operation failed", operation=operation, error=str(e))
        raise PersistenceError(
            f"Query failed: {e}",
            operation=operation,
            recoverable=isinstance(e, psycopg.OperationalError),
        ) from e


def raise_identity_conflict(error: DatabaseError, platform: str, platform_id: str) -> None:
    if error.constraint in IDENTITY_UNIQUE_CONSTRAINTS:
        raise IdentityConflictError(platform, platform_id) from error


def jsonb(value: Any) -> Jsonb:
    return Jsonb(value if value is not None else {})


def as_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def parse_timestamp(value: Any) -> datetime | None:
    """Timestamps arrive as datetime from columns and as ISO strings from json_agg."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def sender_from_row(row: dict[str, Any]) -> SenderIdentity:
    return SenderIdentity(
        platform_id=row.get("sender_platform_id"),
        name=row.get("sender_name"),
        email=row.get("sender_email"),
        handle=row.get("sender_handle"),
    )
