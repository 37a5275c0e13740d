from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session


def next_reference(db: Session, column: Any, prefix: str, width: int) -> str:
    """Next ``{prefix}-{n}`` for a human-facing reference column, zero padded."""
    last = db.execute(
        select(column).where(column.like(f"{prefix}-%")).order_by(column.desc()).limit(1)
    ).scalar_one_or_none()
    number = 1
    if last:
        tail = last.rsplit("-", 1)[-1]
        if tail.isdigit():
            number = int(tail) + 1
    return f"{prefix}-{number:0{width}d}"


def day_prefix(code: str, when: datetime) -> str:
    return f"{code}-{when:%Y%m%d}"


def year_prefix(code: str, when: datetime) -> str:
    return f"{code}-{when:%Y}"
