# parsing information from
# https://cs.android.com/android/platform/superproject/+/master:frameworks/base/libs/androidfw/include/androidfw/ResourceTypes.h

import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Iterator, Optional, Sequence, Tuple, Union

from loguru import logger

from .errors import DecodeError, MalformedDocument
from .stringpool import StringPool

COMMON_HEADER_LEN = 8
NODE_HEADER_LEN = 16
ATTRIBUTE_LENGTH = 20

COMMON_HEADER = struct.Struct("<HHI")
# ns, name, attributeStart, attributeSize, attributeCount, idIndex, classIndex, styleIndex
ATTR_EXT = struct.Struct("<IIHHHHHH")
# ns, name, rawValue, Res_value: size, res0, dataType, data
ATTRIBUTE = struct.Struct("<IIIHBBI")


class ChunkType(IntEnum):
    STRING_POOL = 0x0001
    XML = 0x0003
    START_NAMESPACE = 0x0100
    END_NAMESPACE = 0x0101
    START_ELEMENT = 0x0102
    END_ELEMENT = 0x0103
    CDATA = 0x0104
    RESOURCE_MAP = 0x0180


class ValueType(IntEnum):
    NULL = 0x00
    REFERENCE = 0x01
    ATTRIBUTE = 0x02
    STRING = 0x03
    FLOAT = 0x04
    INT_DEC = 0x10
    INT_HEX = 0x11
    INT_BOOLEAN = 0x12


class WalkState(Enum):
    START = "start"
    IN_HEADER = "in_header"
    STREAMING = "streaming"
    END = "end"
    FAILED = "failed"


@dataclass(frozen=True)
class ChunkHeader:
    type: int
    header_size: int
    size: int
    offset: int

    @property
    def end(self) -> int:
        return self.offset + self.size


def read_chunk_header(data: bytes, offset: int, limit: int) -> ChunkHeader:
    if offset + COMMON_HEADER_LEN > limit:
        raise MalformedDocument("truncated chunk header at {}".format(offset))
    chunk_type, header_size, size = COMMON_HEADER.unpack_from(data, offset)
    if header_size < COMMON_HEADER_LEN or size < header_size:
        raise MalformedDocument("inconsistent chunk at {}: header {} bytes, chunk {} bytes".format(
            offset, header_size, size))
    if offset + size > limit:
        raise MalformedDocument("chunk at {} declares {} bytes, only {} remain".format(offset, size, limit - offset))
    return ChunkHeader(chunk_type, header_size, size, offset)


def read_document_header(data: bytes) -> ChunkHeader:
    header = read_chunk_header(data, 0, len(data))
    if header.type != ChunkType.XML:
        raise MalformedDocument("not a binary xml document (type {:#x})".format(header.type))
    if header.header_size != COMMON_HEADER_LEN:
        raise MalformedDocument("File header not of size 8!")
    return header


def iter_chunks(data: bytes, document: ChunkHeader) -> Iterator[ChunkHeader]:
    offset = document.offset + document.header_size
    while offset < document.end:
        chunk = read_chunk_header(data, offset, document.end)
        yield chunk
        offset = chunk.end


def decode_resource_map(data: bytes, chunk: ChunkHeader) -> Tuple[int, ...]:
    count = (chunk.size - chunk.header_size) // 4
    return struct.unpack_from("<{}I".format(count), data, chunk.offset + chunk.header_size)


def _int32(v: int) -> int:
    return v - (1 << 32) if v & (1 << 31) else v


def typed_value(pool: StringPool, value_type: int, data: int) -> Any:
    if value_type == ValueType.STRING:
        return pool.resolve(data)
    if value_type == ValueType.INT_BOOLEAN:
        return data != 0
    if value_type in (ValueType.INT_DEC, ValueType.INT_HEX):
        return _int32(data)
    if value_type == ValueType.FLOAT:
        return struct.unpack("<f", struct.pack("<I", data))[0]
    return data


@dataclass(frozen=True)
class Attribute:
    namespace: Optional[str]
    name: str
    value_type: int
    data: int
    raw_value: Optional[str]
    resource_id: int
    offset: int
    value: Any = None


@dataclass(frozen=True)
class StartTag:
    name: str
    namespace: Optional[str]
    attributes: Tuple[Attribute, ...]
    line: int
    offset: int
    size: int

    def get_attribute(self, name: str, namespace: Optional[str] = None) -> Optional[Attribute]:
        for attr in self.attributes:
            if attr.name == name and (namespace is None or attr.namespace == namespace):
                return attr
        return None

    def find_resource(self, resource_id: int) -> Optional[Attribute]:
        for attr in self.attributes:
            if attr.resource_id == resource_id:
                return attr
        return None


@dataclass(frozen=True)
class EndTag:
    name: str
    namespace: Optional[str]
    line: int
    offset: int


@dataclass(frozen=True)
class CharacterData:
    text: Optional[str]
    line: int
    offset: int


@dataclass(frozen=True)
class Invalid:
    description: str
    error: DecodeError


Event = Union[StartTag, EndTag, CharacterData, Invalid]


class BinaryXmlVisitor(ABC):
    """Receives the events of one traversal in document order.

    A visitor that raises from any callback aborts the traversal; the
    exception reaches the caller of `walk`.
    """

    @abstractmethod
    def on_start_tag(self, element: StartTag) -> None:
        pass

    @abstractmethod
    def on_end_tag(self, element: EndTag) -> None:
        pass

    @abstractmethod
    def on_character_data(self, element: CharacterData) -> None:
        pass

    @abstractmethod
    def on_invalid(self, element: Invalid) -> None:
        pass


_HANDLERS = {
    StartTag: "on_start_tag",
    EndTag: "on_end_tag",
    CharacterData: "on_character_data",
    Invalid: "on_invalid",
}


class BinaryXml:
    def __init__(self, data: bytes):
        self._data = bytes(data)
        self.state = WalkState.START
        self.pool: Optional[StringPool] = None
        self.resource_ids: Sequence[int] = ()

    def events(self) -> Iterator[Event]:
        """Decode the document chunk by chunk.

        A decode failure ends the stream with a single Invalid event.
        """
        self.state = WalkState.START
        self.pool = None
        self.resource_ids = ()
        try:
            self.state = WalkState.IN_HEADER
            document = read_document_header(self._data)
            self.state = WalkState.STREAMING
            depth = 0
            for chunk in iter_chunks(self._data, document):
                event = self._decode_chunk(chunk)
                if isinstance(event, StartTag):
                    depth += 1
                elif isinstance(event, EndTag):
                    if depth == 0:
                        raise MalformedDocument("end tag [{}] at {} has no open start tag".format(event.name, chunk.offset))
                    depth -= 1
                if event is not None:
                    yield event
            if depth:
                raise MalformedDocument("document ends with {} unclosed elements".format(depth))
        except DecodeError as error:
            self.state = WalkState.FAILED
            logger.debug("walk failed: {}", error)
            yield Invalid(str(error), error)
            return
        self.state = WalkState.END

    def walk(self, visitor: BinaryXmlVisitor) -> WalkState:
        for event in self.events():
            getattr(visitor, _HANDLERS[type(event)])(event)
        return self.state

    def has_element(self, name: str) -> bool:
        return any(isinstance(event, StartTag) and event.name == name for event in self.events())

    def _require_pool(self, chunk: ChunkHeader) -> StringPool:
        if self.pool is None:
            raise MalformedDocument("chunk at {} precedes the string pool".format(chunk.offset))
        return self.pool

    def _name(self, ref: int, chunk: ChunkHeader) -> str:
        name = self._require_pool(chunk).resolve(ref)
        if name is None:
            raise MalformedDocument("name missing in chunk at {}".format(chunk.offset))
        return name

    def _decode_chunk(self, chunk: ChunkHeader) -> Optional[Event]:
        if chunk.type == ChunkType.STRING_POOL:
            if self.pool is not None:
                raise MalformedDocument("More than one string pool!")
            self.pool, _ = StringPool.decode(self._data, chunk.offset)
            return None
        if chunk.type == ChunkType.RESOURCE_MAP:
            self.resource_ids = decode_resource_map(self._data, chunk)
            return None
        if chunk.type in (ChunkType.START_ELEMENT, ChunkType.END_ELEMENT, ChunkType.CDATA):
            if chunk.header_size < NODE_HEADER_LEN:
                raise MalformedDocument("node header at {} is {} bytes".format(chunk.offset, chunk.header_size))
            (line,) = struct.unpack_from("<I", self._data, chunk.offset + COMMON_HEADER_LEN)
            ext = chunk.offset + chunk.header_size
            if chunk.type == ChunkType.START_ELEMENT:
                return self._start_tag(chunk, ext, line)
            if ext + 8 > chunk.end:
                raise MalformedDocument("truncated node at {}".format(chunk.offset))
            if chunk.type == ChunkType.END_ELEMENT:
                ns, name = struct.unpack_from("<II", self._data, ext)
                pool = self._require_pool(chunk)
                return EndTag(self._name(name, chunk), pool.resolve(ns), line, chunk.offset)
            (data,) = struct.unpack_from("<I", self._data, ext)
            return CharacterData(self._require_pool(chunk).resolve(data), line, chunk.offset)
        # namespaces and unknown chunks carry nothing for the visitor
        logger.debug("skipping chunk type {:#x} at {}", chunk.type, chunk.offset)
        return None

    def _start_tag(self, chunk: ChunkHeader, ext: int, line: int) -> StartTag:
        if ext + ATTR_EXT.size > chunk.end:
            raise MalformedDocument("truncated start element at {}".format(chunk.offset))
        (ns, name, attr_start, attr_size, attr_count, _, _, _) = ATTR_EXT.unpack_from(self._data, ext)
        if attr_count and attr_size < ATTRIBUTE_LENGTH:
            raise MalformedDocument("Cannot decode attribute length {} < {}!".format(attr_size, ATTRIBUTE_LENGTH))
        attrs_offset = ext + attr_start
        if attrs_offset + attr_count * attr_size > chunk.end:
            raise MalformedDocument("attributes of element at {} overrun the chunk".format(chunk.offset))
        pool = self._require_pool(chunk)
        attributes = []
        for i in range(attr_count):
            offset = attrs_offset + i * attr_size
            (a_ns, a_name, raw, _, _, value_type, data) = ATTRIBUTE.unpack_from(self._data, offset)
            resource_id = self.resource_ids[a_name] if a_name < len(self.resource_ids) else 0
            attributes.append(Attribute(
                namespace=pool.resolve(a_ns),
                name=self._name(a_name, chunk),
                value_type=value_type,
                data=data,
                raw_value=pool.resolve(raw),
                resource_id=resource_id,
                offset=offset,
                value=typed_value(pool, value_type, data),
            ))
        return StartTag(self._name(name, chunk), pool.resolve(ns), tuple(attributes), line, chunk.offset, chunk.size)


def walk(data: bytes, visitor: BinaryXmlVisitor) -> WalkState:
    return BinaryXml(data).walk(visitor)
