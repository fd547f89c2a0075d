"""Identifier helpers."""

from datetime import UTC, datetime
from uuid import uuid4


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def delegation_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    return f"del_{stamp}_{uuid4().hex[:8]}"


def now_iso() -> str:
    return datetime.now(UTC).isoformat()
