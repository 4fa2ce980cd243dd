"""Protocol Buffers wire encoding for dataclass messages.

A message is a dataclass deriving from :class:`Message` whose attributes are
declared with :func:`field`, giving each one a tag and a wire kind.
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Any, NamedTuple, TypeVar

_MAX_TAG = (1 << 29) - 1
_MAX_VARINT_LEN = 10
_MASK64 = (1 << 64) - 1
_MASK32 = (1 << 32) - 1
_RECURSION_LIMIT = 100

_TAG = "labkit_tag"
_KIND = "labkit_kind"
_REPEATED = "labkit_repeated"

M = TypeVar("M", bound="Message")


class EncodeError(Exception):
    """A message could not be encoded."""

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.description = description

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EncodeError):
            return NotImplemented
        return self.description == other.description

    def __hash__(self) -> int:
        return hash(self.description)

    def __str__(self) -> str:
        return f"failed to encode Protobuf message: {self.description}"


class DecodeError(Exception):
    """A buffer could not be decoded into a message."""

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.description = description
        self.stack: list[tuple[str, str]] = []

    def push(self, message: str, field_name: str) -> None:
        """Record the message and field the error was found in."""
        self.stack.append((message, field_name))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DecodeError):
            return NotImplemented
        return (self.description, self.stack) == (other.description, other.stack)

    def __hash__(self) -> int:
        return hash((self.description, tuple(self.stack)))

    def __str__(self) -> str:
        path = "".join(f"{message}.{name}: " for message, name in reversed(self.stack))
        return f"failed to decode Protobuf message: {path}{self.description}"


class _WireType(enum.IntEnum):
    Varint = 0
    SixtyFourBit = 1
    LengthDelimited = 2
    StartGroup = 3
    EndGroup = 4
    ThirtyTwoBit = 5


class FieldKind(enum.Enum):
    """The scalar type of a message field."""

    INT32 = "int32"
    INT64 = "int64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    BOOL = "bool"
    ENUM = "enum"
    STRING = "string"
    BYTES = "bytes"


_VARINT_KINDS = frozenset(
    {FieldKind.INT32, FieldKind.INT64, FieldKind.UINT32, FieldKind.UINT64, FieldKind.BOOL, FieldKind.ENUM}
)

_RANGES = {
    FieldKind.INT32: (-(1 << 31), (1 << 31) - 1),
    FieldKind.ENUM: (-(1 << 31), (1 << 31) - 1),
    FieldKind.INT64: (-(1 << 63), (1 << 63) - 1),
    FieldKind.UINT32: (0, _MASK32),
    FieldKind.UINT64: (0, _MASK64),
}

_DEFAULTS: dict[FieldKind, Any] = {
    FieldKind.INT32: 0,
    FieldKind.INT64: 0,
    FieldKind.UINT32: 0,
    FieldKind.UINT64: 0,
    FieldKind.ENUM: 0,
    FieldKind.BOOL: False,
    FieldKind.STRING: "",
    FieldKind.BYTES: b"",
}


class _FieldSpec(NamedTuple):
    name: str
    tag: int
    kind: FieldKind
    repeated: bool

    @property
    def wire_type(self) -> _WireType:
        return _WireType.Varint if self.kind in _VARINT_KINDS else _WireType.LengthDelimited


def field(tag: int, kind: FieldKind, repeated: bool = False) -> Any:
    """Declare a message attribute with its tag and kind."""
    if not 1 <= tag <= _MAX_TAG:
        raise ValueError(f"tag must be between 1 and {_MAX_TAG}, got {tag}")
    if not isinstance(kind, FieldKind):
        raise TypeError(f"kind must be a FieldKind, got {kind!r}")
    metadata = {_TAG: tag, _KIND: kind, _REPEATED: bool(repeated)}
    if repeated:
        return dataclasses.field(default_factory=list, metadata=metadata)
    return dataclasses.field(default=_DEFAULTS[kind], metadata=metadata)


_SCHEMAS: dict[type, tuple[tuple[_FieldSpec, ...], dict[int, _FieldSpec]]] = {}


def _schema(cls: type) -> tuple[tuple[_FieldSpec, ...], dict[int, _FieldSpec]]:
    cached = _SCHEMAS.get(cls)
    if cached is not None:
        return cached
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls.__name__} must be a dataclass")
    specs = tuple(
        _FieldSpec(f.name, f.metadata[_TAG], f.metadata[_KIND], f.metadata[_REPEATED])
        for f in dataclasses.fields(cls)
        if _TAG in f.metadata
    )
    by_tag: dict[int, _FieldSpec] = {}
    for spec in specs:
        if spec.tag in by_tag:
            raise TypeError(f"{cls.__name__}: tag {spec.tag} is used by more than one field")
        by_tag[spec.tag] = spec
    _SCHEMAS[cls] = (specs, by_tag)
    return specs, by_tag


def _write_varint(out: bytearray, value: int) -> None:
    value &= _MASK64
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)


def _write_key(out: bytearray, tag: int, wire_type: _WireType) -> None:
    _write_varint(out, (tag << 3) | wire_type)


def _scalar_payload(spec: _FieldSpec, value: Any) -> int | bytes:
    """Validate a value and return its varint or its raw bytes."""
    kind = spec.kind
    if kind is FieldKind.BOOL:
        if not isinstance(value, bool):
            raise EncodeError(f"{spec.name}: expected bool, got {type(value).__name__}")
        return int(value)
    if kind in _RANGES:
        if not isinstance(value, int) or isinstance(value, bool):
            raise EncodeError(f"{spec.name}: expected int, got {type(value).__name__}")
        low, high = _RANGES[kind]
        if not low <= value <= high:
            raise EncodeError(f"{spec.name}: {value} is out of range for {kind.value}")
        return int(value)
    if kind is FieldKind.STRING:
        if not isinstance(value, str):
            raise EncodeError(f"{spec.name}: expected str, got {type(value).__name__}")
        try:
            return value.encode("utf-8")
        except UnicodeEncodeError as error:
            raise EncodeError(f"{spec.name}: string is not valid UTF-8") from error
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise EncodeError(f"{spec.name}: expected bytes, got {type(value).__name__}")
    return bytes(value)


def _from_varint(kind: FieldKind, raw: int) -> Any:
    if kind in (FieldKind.INT32, FieldKind.ENUM):
        low = raw & _MASK32
        return low - (1 << 32) if low >= 1 << 31 else low
    if kind is FieldKind.INT64:
        return raw - (1 << 64) if raw >= 1 << 63 else raw
    if kind is FieldKind.UINT32:
        return raw & _MASK32
    if kind is FieldKind.BOOL:
        return raw != 0
    return raw


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def take(self, size: int) -> bytes:
        if len(self._data) - self._pos < size:
            raise DecodeError("buffer underflow")
        chunk = self._data[self._pos : self._pos + size]
        self._pos += size
        return chunk

    def read_varint(self) -> int:
        result = 0
        for count in range(_MAX_VARINT_LEN):
            if self.at_end():
                raise DecodeError("invalid varint")
            byte = self._data[self._pos]
            self._pos += 1
            if count == _MAX_VARINT_LEN - 1 and byte > 1:
                raise DecodeError("invalid varint")
            result |= (byte & 0x7F) << (7 * count)
            if byte < 0x80:
                return result
        raise DecodeError("invalid varint")

    def read_key(self) -> tuple[int, _WireType]:
        key = self.read_varint()
        if key > _MASK32:
            raise DecodeError(f"invalid key value: {key}")
        wire = key & 0x07
        if wire > _WireType.ThirtyTwoBit:
            raise DecodeError(f"invalid wire type value: {wire}")
        tag = key >> 3
        if tag == 0:
            raise DecodeError("invalid tag value: 0")
        return tag, _WireType(wire)

    def read_length_delimited(self) -> bytes:
        return self.take(self.read_varint())

    def skip(self, tag: int, wire: _WireType, depth: int = _RECURSION_LIMIT) -> None:
        if wire is _WireType.Varint:
            self.read_varint()
        elif wire is _WireType.SixtyFourBit:
            self.take(8)
        elif wire is _WireType.ThirtyTwoBit:
            self.take(4)
        elif wire is _WireType.LengthDelimited:
            self.read_length_delimited()
        elif wire is _WireType.StartGroup:
            if depth == 0:
                raise DecodeError("recursion limit reached")
            while True:
                inner_tag, inner_wire = self.read_key()
                if inner_wire is _WireType.EndGroup:
                    if inner_tag != tag:
                        raise DecodeError("unexpected end group tag")
                    return
                self.skip(inner_tag, inner_wire, depth - 1)
        else:
            raise DecodeError("unexpected end group tag")


class Message:
    """Base class of encodable messages; subclasses must be dataclasses."""

    def encode(self) -> bytes:
        """Encode the message to its wire form."""
        specs, _ = _schema(type(self))
        out = bytearray()
        for spec in specs:
            value = getattr(self, spec.name)
            if spec.repeated:
                self._encode_repeated(out, spec, value)
                continue
            payload = _scalar_payload(spec, value)
            if value == _DEFAULTS[spec.kind]:
                continue
            _write_key(out, spec.tag, spec.wire_type)
            if isinstance(payload, int):
                _write_varint(out, payload)
            else:
                _write_varint(out, len(payload))
                out += payload
        return bytes(out)

    @staticmethod
    def _encode_repeated(out: bytearray, spec: _FieldSpec, value: Any) -> None:
        if not isinstance(value, (list, tuple)):
            raise EncodeError(f"{spec.name}: expected a list, got {type(value).__name__}")
        payloads = [_scalar_payload(spec, item) for item in value]
        if not payloads:
            return
        if spec.kind in _VARINT_KINDS:
            packed = bytearray()
            for number in payloads:
                _write_varint(packed, number)
            _write_key(out, spec.tag, _WireType.LengthDelimited)
            _write_varint(out, len(packed))
            out += packed
            return
        for chunk in payloads:
            _write_key(out, spec.tag, _WireType.LengthDelimited)
            _write_varint(out, len(chunk))
            out += chunk

    @classmethod
    def decode(cls: type[M], data: bytes | bytearray | memoryview) -> M:
        """Decode a message of this type from its wire form."""
        _, by_tag = _schema(cls)
        reader = _Reader(memoryview(data).tobytes())
        message = cls()
        while not reader.at_end():
            tag, wire = reader.read_key()
            spec = by_tag.get(tag)
            if spec is None:
                reader.skip(tag, wire)
                continue
            try:
                message._merge_field(spec, wire, reader)
            except DecodeError as error:
                error.push(cls.__name__, spec.name)
                raise
        return message

    def _merge_field(self, spec: _FieldSpec, wire: _WireType, reader: _Reader) -> None:
        if spec.repeated and spec.kind in _VARINT_KINDS and wire is _WireType.LengthDelimited:
            packed = _Reader(reader.read_length_delimited())
            items = getattr(self, spec.name)
            while not packed.at_end():
                items.append(_from_varint(spec.kind, packed.read_varint()))
            return
        expected = spec.wire_type
        if wire is not expected:
            raise DecodeError(f"invalid wire type: {wire.name} (expected {expected.name})")
        if expected is _WireType.Varint:
            value: Any = _from_varint(spec.kind, reader.read_varint())
        else:
            value = reader.read_length_delimited()
            if spec.kind is FieldKind.STRING:
                try:
                    value = value.decode("utf-8")
                except UnicodeDecodeError as error:
                    raise DecodeError(
                        "invalid string value: data is not UTF-8 encoded"
                    ) from error
        if spec.repeated:
            getattr(self, spec.name).append(value)
        else:
            setattr(self, spec.name, value)

    def encoded_len(self) -> int:
        """Return the length of the encoded message in bytes."""
        return len(self.encode())

    def clear(self) -> None:
        """Reset every field to its default value."""
        specs, _ = _schema(type(self))
        for spec in specs:
            setattr(self, spec.name, [] if spec.repeated else _DEFAULTS[spec.kind])


def encode(message: Message) -> bytes:
    """Encode a message to bytes."""
    if not isinstance(message, Message):
        raise TypeError(f"expected a Message, got {type(message).__name__}")
    return message.encode()


def decode(message_type: type[M], data: bytes | bytearray | memoryview) -> M:
    """Decode a message of the given type from bytes."""
    return message_type.decode(data)