from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from titikrasa.errors import ERR, AppError, app_error


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def ok(data: Any, meta: Optional[dict] = None) -> dict:
    return {"data": data, "error": None, "meta": meta or _meta()}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime | date]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime) and value.tzinfo is None:
        # SQLite hands back naive values; everything is stored in UTC.
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _paginate_by_page(query, page: int, page_size: int) -> tuple[list[Any], int]:
    total = query.count()
    rows = query.offset((page - 1) * page_size).limit(page_size).all()
    return rows, total


def _page_meta(page: int, page_size: int, total: int) -> dict:
    meta = _meta()
    meta["pagination"] = {
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": max(1, math.ceil(total / page_size)) if page_size else 1,
    }
    return meta


def db_error(exc: SQLAlchemyError, message: str) -> AppError:
    return app_error(
        ERR.SERVER_ERROR, message=message, details={"hint": str(getattr(exc, "orig", None) or exc)}
    )
