"""
KeyValue pair used to linearise label and annotation maps for transport.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping


@dataclass(frozen=True, order=True)
class KeyValue:
    """An immutable ``(key, value)`` pair ordered by key, then value."""

    key: str
    value: str

    def __post_init__(self) -> None:
        if self.key is None or self.value is None:
            raise ValueError("KeyValue key and value must not be None.")

    @classmethod
    def list_from_map(cls, mapping: Mapping[str, str]) -> list["KeyValue"]:
        """Return the entries of *mapping* as a sorted list."""
        return sorted(cls(str(key), str(value)) for key, value in mapping.items())

    @staticmethod
    def map_from_list(pairs: Iterable["KeyValue"]) -> dict[str, str]:
        """Collapse *pairs* back into a dict.

        Raises:
            ValueError: If the same key appears twice.
        """
        result: dict[str, str] = {}
        for pair in sorted(pairs):
            if pair.key in result:
                raise ValueError(f"Duplicate key {pair.key!r}.")
            result[pair.key] = pair.value
        return result

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "value": self.value}
