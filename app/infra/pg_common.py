# app/infra/pg_common.py
"""Small helpers shared by the asyncpg repositories."""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any, Iterable, Optional

from app.core.dispatch.domain import GeoPoint


def parse_uuid(value: Any) -> Optional[str]:
    """
    Normalise an id to canonical UUID text, or None if it is not a UUID.

    Malformed ids can never match a row, so repositories treat them as
    "not found" instead of letting the driver raise.
    """
    if isinstance(value, uuid.UUID):
        return str(value)
    if not isinstance(value, str):
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


def parse_uuids(values: Iterable[Any]) -> list[str]:
    return [u for u in (parse_uuid(v) for v in values) if u is not None]


def id_str(value: Any) -> Optional[str]:
    """asyncpg returns uuid.UUID for uuid columns; the domain uses str."""
    return str(value) if value is not None else None


def geo_from_row(row) -> Optional[GeoPoint]:
    lon = row.get("longitude")
    lat = row.get("latitude")
    if lon is None or lat is None:
        return None
    return GeoPoint(longitude=float(lon), latitude=float(lat))


@asynccontextmanager
async def borrowed(conn):
    """Hand out a connection someone else owns (an open transaction)."""
    yield conn
