from __future__ import annotations

from typing import Iterator

from .errors import DuplicateHeader
from .models import Header, fingerprint_hex


class HeaderStore:
    """Append-only fingerprint -> header mapping."""

    def __init__(self) -> None:
        self._headers: dict[int, Header] = {}

    def __len__(self) -> int:
        return len(self._headers)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._headers

    def __iter__(self) -> Iterator[tuple[int, Header]]:
        return iter(self._headers.items())

    def get(self, fingerprint: int) -> Header | None:
        return self._headers.get(fingerprint)

    def insert(self, fingerprint: int, header: Header) -> None:
        if fingerprint in self._headers:
            raise DuplicateHeader(f"Header {fingerprint_hex(fingerprint)} already submitted")
        self._headers[fingerprint] = header


class CanonicalIndex:
    """Height -> fingerprint of the header currently treated as canonical there."""

    def __init__(self) -> None:
        self._by_height: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._by_height)

    def get(self, height: int) -> int | None:
        return self._by_height.get(height)

    def bind(self, height: int, fingerprint: int) -> int | None:
        previous = self._by_height.get(height)
        self._by_height[height] = fingerprint
        return previous

    def is_canonical(self, fingerprint: int, header: Header | None) -> bool:
        if header is None:
            return False
        return self._by_height.get(header.height) == fingerprint

    def items(self) -> list[tuple[int, int]]:
        return sorted(self._by_height.items())
