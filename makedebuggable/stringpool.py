# string pool layout from
# https://cs.android.com/android/platform/superproject/+/master:frameworks/base/libs/androidfw/include/androidfw/ResourceTypes.h

import struct
from typing import Iterator, List, NewType, Optional, Sequence, Tuple

from loguru import logger

from .errors import MalformedPool

StringRef = NewType("StringRef", int)

NO_ENTRY = 0xFFFFFFFF
CHUNK_TYPE_STRINGPOOL = 0x0001
SORTED_FLAG = 1 << 0
UTF8_FLAG = 1 << 8
UINT32_LENGTH = 4

# type, headerSize, size, stringCount, styleCount, flags, stringsStart, stylesStart
POOL_HEADER = struct.Struct("<HHIIIIII")


class StringPool:
    def __init__(self, strings: Sequence[str], utf8: bool = False):
        self._strings = list(strings)
        self.utf8 = utf8

    def __len__(self) -> int:
        return len(self._strings)

    def resolve(self, ref: StringRef) -> Optional[str]:
        """Return the string behind `ref`, None for NO_ENTRY."""
        if ref == NO_ENTRY:
            return None
        if not 0 <= ref < len(self._strings):
            raise MalformedPool("string index {} out of range (pool has {} strings)".format(ref, len(self._strings)))
        return self._strings[ref]

    def indices_of(self, value: str) -> Iterator[StringRef]:
        for i, s in enumerate(self._strings):
            if s == value:
                yield StringRef(i)

    @classmethod
    def decode(cls, data: bytes, offset: int = 0) -> Tuple["StringPool", int]:
        header = _read_header(data, offset)
        (_, header_size, size, string_count, style_count, flags, strings_start, styles_start) = header
        end = offset + size
        table = offset + header_size
        utf8 = (flags & UTF8_FLAG) != 0
        logger.debug("string pool at {}: {} strings, {} styles, utf8={}", offset, string_count, style_count, utf8)

        data_start, data_end = _string_region(header, offset)
        offsets = struct.unpack_from("<{}I".format(string_count), data, table)
        strings = []
        for i, rel in enumerate(offsets):
            pos = data_start + rel
            if rel >= data_end - data_start:
                raise MalformedPool("offset of string {} points past the string data".format(i))
            strings.append(_decode8(data, pos, data_end) if utf8 else _decode16(data, pos, data_end))
        return cls(strings, utf8), end - offset


def _read_header(data: bytes, offset: int) -> tuple:
    if offset < 0 or offset + POOL_HEADER.size > len(data):
        raise MalformedPool("truncated string pool header at {}".format(offset))
    header = POOL_HEADER.unpack_from(data, offset)
    (chunk_type, header_size, size, string_count, style_count, _, _, _) = header
    if chunk_type != CHUNK_TYPE_STRINGPOOL:
        raise MalformedPool("chunk at {} is not a string pool (type {:#x})".format(offset, chunk_type))
    if header_size < POOL_HEADER.size or size < header_size or offset + size > len(data):
        raise MalformedPool("string pool at {} declares {} bytes, {} available".format(offset, size, len(data) - offset))
    if header_size + UINT32_LENGTH * (string_count + style_count) > size:
        raise MalformedPool("string pool offset tables overrun the chunk")
    return header


def _string_region(header: tuple, offset: int) -> Tuple[int, int]:
    """Absolute [start, end) of the string data."""
    (_, header_size, size, string_count, style_count, _, strings_start, styles_start) = header
    tables_end = offset + header_size + UINT32_LENGTH * (string_count + style_count)
    if string_count == 0 and strings_start == 0:
        return tables_end, tables_end
    data_start = offset + strings_start
    data_end = offset + styles_start if style_count and styles_start else offset + size
    if data_start < tables_end or data_start > data_end or data_end > offset + size:
        raise MalformedPool("string data region [{}, {}) is outside the pool".format(data_start, data_end))
    return data_start, data_end


# following decoders mirror androguard's

def _length8(data: bytes, pos: int, limit: int) -> Tuple[int, int]:
    if pos >= limit:
        raise MalformedPool("string length at {} overruns the pool".format(pos))
    first = data[pos]
    if first & 0x80:
        if pos + 1 >= limit:
            raise MalformedPool("string length at {} overruns the pool".format(pos))
        return ((first & 0x7F) << 8) | data[pos + 1], pos + 2
    return first, pos + 1


def _length16(data: bytes, pos: int, limit: int) -> Tuple[int, int]:
    if pos + 2 > limit:
        raise MalformedPool("string length at {} overruns the pool".format(pos))
    (first,) = struct.unpack_from("<H", data, pos)
    if first & 0x8000:
        if pos + 4 > limit:
            raise MalformedPool("string length at {} overruns the pool".format(pos))
        (second,) = struct.unpack_from("<H", data, pos + 2)
        return ((first & 0x7FFF) << 16) | second, pos + 4
    return first, pos + 2


def _decode8(data: bytes, pos: int, limit: int) -> str:
    # UTF-8 strings carry the UTF-16 length first, then the byte length
    _, pos = _length8(data, pos, limit)
    n, pos = _length8(data, pos, limit)
    if pos + n + 1 > limit:
        raise MalformedPool("string at {} of {} bytes overruns the pool".format(pos, n))
    if data[pos + n] != 0:
        raise MalformedPool("string at {} not terminated by NULL".format(pos))
    return bytes(data[pos:pos + n]).decode("utf-8", "replace")


def _decode16(data: bytes, pos: int, limit: int) -> str:
    n, pos = _length16(data, pos, limit)
    end = pos + n * 2
    if end + 2 > limit:
        raise MalformedPool("string at {} of {} units overruns the pool".format(pos, n))
    if data[end:end + 2] != b"\x00\x00":
        raise MalformedPool("string at {} not terminated by NULL".format(pos))
    return bytes(data[pos:end]).decode("utf-16-le", "replace")


def _encode_length8(n: int) -> bytes:
    if n > 0x7FFF:
        raise ValueError("length of UTF-8 string is too large!")
    if n < 0x80:
        return bytes([n])
    return bytes([0x80 | (n >> 8), n & 0xFF])


def _encode_length16(n: int) -> bytes:
    if n > 0x7FFFFFFF:
        raise ValueError("length of UTF-16 string is too large!")
    if n < 0x8000:
        return struct.pack("<H", n)
    return struct.pack("<HH", 0x8000 | (n >> 16), n & 0xFFFF)


def encode_string(value: str, utf8: bool) -> bytes:
    if utf8:
        encoded = value.encode("utf-8")
        units = len(value.encode("utf-16-le")) // 2
        return _encode_length8(units) + _encode_length8(len(encoded)) + encoded + b"\x00"
    encoded = value.encode("utf-16-le")
    return _encode_length16(len(encoded) // 2) + encoded + b"\x00\x00"


def append_strings(data: bytes, offset: int, strings: Sequence[str]) -> bytes:
    """Re-serialize the pool chunk at `offset` with `strings` appended.

    Existing indices, strings and styles are kept byte for byte; the new
    strings get the indices following the current last one.
    """
    header = _read_header(data, offset)
    (chunk_type, header_size, size, string_count, style_count, flags, _, _) = header
    utf8 = (flags & UTF8_FLAG) != 0
    end = offset + size
    table = offset + header_size
    tables_end = table + UINT32_LENGTH * (string_count + style_count)
    data_start, data_end = _string_region(header, offset)

    string_offsets = data[table:table + UINT32_LENGTH * string_count]
    style_offsets = data[table + UINT32_LENGTH * string_count:tables_end]
    gap = data[tables_end:data_start]
    string_data = bytearray(data[data_start:data_end])
    style_data = data[data_end:end]

    new_offsets: List[int] = []
    for s in strings:
        new_offsets.append(len(string_data))
        string_data += encode_string(s, utf8)
    string_data += b"\x00" * (-len(string_data) % UINT32_LENGTH)

    new_count = string_count + len(strings)
    strings_start = header_size + UINT32_LENGTH * (new_count + style_count) + len(gap)
    styles_start = strings_start + len(string_data) if style_count else 0
    new_size = strings_start + len(string_data) + len(style_data)
    out = bytearray(POOL_HEADER.pack(chunk_type, header_size, new_size, new_count, style_count,
                                     flags & ~SORTED_FLAG, strings_start, styles_start))
    out += data[offset + POOL_HEADER.size:table]
    out += string_offsets
    out += struct.pack("<{}I".format(len(new_offsets)), *new_offsets)
    out += style_offsets
    out += gap
    out += string_data
    out += style_data
    return bytes(out)
