"""A sample message used to exercise the codec."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from .codec import FieldKind, Message, field


class MsgType(enum.IntEnum):
    """Kinds of operation a Msg can describe."""

    UNKNOWN = 0
    PUT = 1
    GET = 2
    DEL = 3

    @classmethod
    def from_int(cls, value: int) -> MsgType | None:
        """Return the member for a value, or None if there is none."""
        try:
            return cls(value)
        except ValueError:
            return None

    @classmethod
    def is_valid(cls, value: int) -> bool:
        """Tell whether a value names a member."""
        return cls.from_int(value) is not None


@dataclass
class Msg(Message):
    """A simple message."""

    type: int = field(1, FieldKind.ENUM)
    id: int = field(2, FieldKind.UINT64)
    name: str = field(3, FieldKind.STRING)
    payload: list = field(4, FieldKind.BYTES, repeated=True)

    def kind(self) -> MsgType:
        """Return the type as a MsgType, or UNKNOWN if the value is invalid."""
        return MsgType.from_int(self.type) or MsgType.UNKNOWN

    def set_kind(self, value: MsgType) -> None:
        """Set the type from a MsgType."""
        self.type = int(value)