"""Header storage and composition.

HeaderMap holds caller-set headers with case-sensitive, unique keys in
insertion order. compose_headers turns a HeaderMap into the ordered list the
transport sends, with Accept and Content-Type always in the first two slots.
"""

from __future__ import annotations

from typing import Iterator, NamedTuple

ACCEPT = "Accept"
CONTENT_TYPE = "Content-Type"


class HeaderEntry(NamedTuple):
    """One header as stored in a HeaderMap."""

    name: str
    value: str


class HeaderMap:
    """Ordered, case-sensitive header mapping.

    Keys are unique. replace() on an existing key updates the value without
    moving the entry, so iteration order is first-insertion order.
    """

    def __init__(self, headers: dict[str, str] | None = None) -> None:
        self._entries: dict[str, str] = {}
        for name, value in (headers or {}).items():
            self.replace(name, value)

    def replace(self, name: str, value: str) -> None:
        """Insert a header or overwrite the value of an existing one."""
        self._entries[name] = value

    def find(self, name: str) -> HeaderEntry | None:
        """Return the entry stored under exactly `name`, or None."""
        if name not in self._entries:
            return None
        return HeaderEntry(name, self._entries[name])

    def remove(self, entry: HeaderEntry) -> None:
        """Remove an entry previously returned by find()."""
        self._entries.pop(entry.name, None)

    def copy(self) -> HeaderMap:
        clone = HeaderMap()
        clone._entries = dict(self._entries)
        return clone

    def __iter__(self) -> Iterator[HeaderEntry]:
        for name, value in self._entries.items():
            yield HeaderEntry(name, value)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __repr__(self) -> str:
        return f"HeaderMap({self._entries!r})"


def compose_headers(
    header_map: HeaderMap,
    default_accept: str,
    default_content_type: str,
) -> list[tuple[str, str]]:
    """Build the ordered header list handed to the transport.

    Accept and Content-Type always occupy the first two slots. A caller-set
    value wins over the operation default, and is not emitted a second time.
    The caller's map is not modified.

    Args:
        header_map: Headers set on the request.
        default_accept: Accept value used when the caller set none.
        default_content_type: Content-Type value used when the caller set none.

    Returns:
        List of (name, value) pairs: Accept, Content-Type, then every other
        header in insertion order.
    """
    working = header_map.copy()
    composed: list[tuple[str, str]] = []

    for name, default in ((ACCEPT, default_accept), (CONTENT_TYPE, default_content_type)):
        entry = working.find(name)
        if entry is not None:
            composed.append((name, entry.value))
            working.remove(entry)
        else:
            composed.append((name, default))

    composed.extend((entry.name, entry.value) for entry in working)
    return composed
