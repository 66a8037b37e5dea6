from __future__ import annotations
from typing import Dict, Iterator, List, Optional

from lexer import ASMError


class LabelTableSealedError(ASMError):
    """Raised when a sealed label table is modified."""


class LabelTable:
    """Maps label names to command indices.

    Names are case-sensitive and bound once; a second insert of the same
    name is refused rather than overwriting the first binding. The parser
    fills the table in a complete pass and then seals it, so lookups during
    execution see every label, including ones defined after their use.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, int] = {}
        self._sealed = False

    def insert(self, name: str, index: int) -> bool:
        if self._sealed:
            raise LabelTableSealedError(f"Cannot bind label '{name}': label table is sealed")
        if name in self._entries:
            return False
        self._entries[name] = index
        return True

    def lookup(self, name: str) -> Optional[int]:
        return self._entries.get(name)

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def names(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"LabelTable({self._entries!r}, sealed={self._sealed})"
