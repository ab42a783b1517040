"""
Typed partial updates.

A patch dataclass declares every editable field with ``UNSET`` as its
default. Only the fields a caller actually supplied (including an explicit
``None``) are reported by ``changes()``, so "leave alone" and "clear" stay
distinguishable.

Usage::

    patch = BidPatch(amount_cents=45000)
    patch.changes()          # {"amount_cents": 45000}
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class Patch:
    def changes(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.changes()

    @classmethod
    def from_mapping(cls, values: dict[str, Any]):
        """Build a patch from the explicitly-set keys of ``values``."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in names})
