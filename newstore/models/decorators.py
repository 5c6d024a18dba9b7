import json
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.types import DateTime, Text, TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timestamps persisted as naive UTC and loaded back as aware UTC.

    Naive input is taken to already be UTC. MySQL DATETIME and SQLite have no
    offset support, so the offset is dropped before binding.
    """

    impl = DateTime()
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class NumberList(TypeDecorator):
    """Ticket numbers stored as a sorted, deduplicated JSON array."""

    impl = Text()
    cache_ok = True

    def process_bind_param(self, value: Optional[Iterable[int]], dialect):
        return json.dumps(sorted({int(n) for n in value or ()}))

    def process_result_value(self, value: Optional[str], dialect):
        return [int(n) for n in json.loads(value)] if value else []
