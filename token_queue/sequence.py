from __future__ import annotations

# Sequence Generator.
#
# Token numbers look like `CS-20241201-007` (canonical) and `CS007`
# (display). Numbers are handed out from an in-process counter per
# (department, business date); the counter is seeded once from the highest
# suffix already in the store and then only ever incremented under a lock,
# so two concurrent issuances can never read the same "last number".
#
# Rollover: the suffix is zero-padded to three digits and simply widens past
# 999 (`CS-20241201-1000`), it never wraps or collides.

import logging
import threading
from datetime import date
from typing import Callable, Iterable

from .errors import CapacityExceeded
from .models import Department

logger = logging.getLogger(__name__)

SUFFIX_WIDTH = 3

# prefix -> canonical numbers already issued with that prefix (the origin
# department of a transferred token is only visible through its number).
IssuedLoader = Callable[[str], Iterable[str]]


def format_numbers(code: str, business_date: date, n: int) -> tuple[str, str]:
    suffix = f"{n:0{SUFFIX_WIDTH}d}"
    return f"{code}-{business_date:%Y%m%d}-{suffix}", f"{code}{suffix}"


def parse_suffix(token_number: str) -> int | None:
    """Numeric suffix of a canonical token number, or None if malformed."""
    tail = token_number.rsplit("-", 1)[-1]
    return int(tail) if tail.isdigit() else None


class SequenceGenerator:
    def __init__(self, loader: IssuedLoader | None = None) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._last: dict[tuple[str, date], int] = {}

    def _seed(self, department: Department, business_date: date) -> int:
        if self._loader is None:
            return 0
        prefix = f"{department.code}-{business_date:%Y%m%d}-"
        highest = 0
        for token_number in self._loader(prefix):
            if not token_number.startswith(prefix):
                continue
            n = parse_suffix(token_number)
            if n is not None and n > highest:
                highest = n
        return highest

    def issued_count(self, department: Department, business_date: date) -> int:
        with self._lock:
            key = (department.id, business_date)
            if key not in self._last:
                self._last[key] = self._seed(department, business_date)
            return self._last[key]

    def next_number(self, department: Department, business_date: date) -> tuple[str, str]:
        """Reserve the next number or raise `CapacityExceeded`."""
        with self._lock:
            key = (department.id, business_date)
            last = self._last.get(key)
            if last is None:
                last = self._seed(department, business_date)
            if last >= department.max_tokens_per_day:
                self._last[key] = last
                raise CapacityExceeded(department.id, department.max_tokens_per_day)
            self._last[key] = last + 1
            return format_numbers(department.code, business_date, last + 1)

    def release(self, department: Department, business_date: date, token_number: str) -> None:
        """Give back the most recent number when issuance failed right after reserving it."""
        with self._lock:
            key = (department.id, business_date)
            if parse_suffix(token_number) == self._last.get(key):
                self._last[key] -= 1
                logger.debug("released unused number %s", token_number)
