from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Tuple
from uuid import UUID

from rewardloop_api.services.errors import EventValidationError


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        timestamp_str, identifier_str = raw.split("|", 1)
        return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise EventValidationError("Invalid pagination cursor") from exc


__all__ = ["decode_time_uuid_cursor", "encode_time_uuid_cursor"]
