"""Attribute rewriting for binary xml documents.

Only the chunks a mutation touches are re-encoded: the string pool when
strings are appended, the resource map when a new name needs a resource id,
and the target start element. Every other byte is copied through unchanged.
String indices are never renumbered, so references elsewhere in the
document stay valid.
"""

import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from loguru import logger

from .axml import (
    ATTR_EXT,
    ATTRIBUTE,
    COMMON_HEADER,
    ATTRIBUTE_LENGTH,
    BinaryXml,
    ChunkHeader,
    ChunkType,
    Invalid,
    StartTag,
    ValueType,
    decode_resource_map,
    iter_chunks,
    read_document_header,
)
from .errors import ElementNotFound, MalformedDocument
from .stringpool import NO_ENTRY, StringPool, append_strings

# Res_value.size
RES_VALUE_SIZE = 8
BOOLEAN_TRUE = 0xFFFFFFFF


@dataclass(frozen=True)
class TypedValue:
    type: int
    data: int = 0
    string: Optional[str] = None

    @classmethod
    def boolean(cls, flag: bool) -> "TypedValue":
        return cls(ValueType.INT_BOOLEAN, BOOLEAN_TRUE if flag else 0)

    @classmethod
    def integer(cls, value: int) -> "TypedValue":
        return cls(ValueType.INT_DEC, value & 0xFFFFFFFF)

    @classmethod
    def reference(cls, resource_id: int) -> "TypedValue":
        return cls(ValueType.REFERENCE, resource_id)

    @classmethod
    def of_string(cls, value: str) -> "TypedValue":
        return cls(ValueType.STRING, string=value)


class _Layout:
    """Top level chunks of a document, in original byte coordinates."""

    def __init__(self, data: bytes):
        self.document = read_document_header(data)
        self.chunks: List[ChunkHeader] = list(iter_chunks(data, self.document))
        pools = [c for c in self.chunks if c.type == ChunkType.STRING_POOL]
        if len(pools) != 1:
            raise MalformedDocument("expected one string pool, found {}".format(len(pools)))
        self.pool = pools[0]
        self.resource_map = next((c for c in self.chunks if c.type == ChunkType.RESOURCE_MAP), None)

    def assemble(self, data: bytes, replacements: Dict[int, bytes], after_pool: bytes = b"") -> bytes:
        body = bytearray()
        for chunk in self.chunks:
            body += replacements.get(chunk.offset, data[chunk.offset:chunk.end])
            if chunk is self.pool:
                body += after_pool
        header = bytearray(data[:self.document.header_size])
        COMMON_HEADER.pack_into(header, 0, self.document.type, self.document.header_size, len(header) + len(body))
        # bytes past the declared document size are kept as they were
        return bytes(header + body + data[self.document.end:])


def _encode_resource_map(chunk: Optional[ChunkHeader], data: bytes, ids: Sequence[int]) -> bytes:
    if chunk is None:
        header_size, extra = COMMON_HEADER.size, b""
    else:
        header_size, extra = chunk.header_size, data[chunk.offset + COMMON_HEADER.size:chunk.offset + chunk.header_size]
    size = header_size + 4 * len(ids)
    return COMMON_HEADER.pack(ChunkType.RESOURCE_MAP, header_size, size) + extra + struct.pack("<{}I".format(len(ids)), *ids)


def _insertion_index(element: StartTag, resource_id: Optional[int]) -> int:
    # attributes are sorted by resource id, unmapped ones last
    if resource_id is None:
        return len(element.attributes)
    for i, attr in enumerate(element.attributes):
        if attr.resource_id == 0 or attr.resource_id > resource_id:
            return i
    return len(element.attributes)


def _insert_attribute(data: bytes, element: StartTag, index: int, record: bytes) -> bytes:
    chunk = bytearray(data[element.offset:element.offset + element.size])
    _, header_size, _ = COMMON_HEADER.unpack_from(chunk, 0)
    (ns, name, attr_start, attr_size, attr_count, id_index, class_index, style_index) = ATTR_EXT.unpack_from(chunk, header_size)
    if attr_count == 0:
        attr_start = max(attr_start, ATTR_EXT.size)
        attr_size = max(attr_size, ATTRIBUTE_LENGTH)
    position = header_size + attr_start + index * attr_size
    chunk[position:position] = record + b"\x00" * (attr_size - len(record))

    def shift(i: int) -> int:
        # 1-based indices, 0 means none
        return i + 1 if i > index else i

    ATTR_EXT.pack_into(chunk, header_size, ns, name, attr_start, attr_size, attr_count + 1,
                       shift(id_index), shift(class_index), shift(style_index))
    COMMON_HEADER.pack_into(chunk, 0, ChunkType.START_ELEMENT, header_size, len(chunk))
    return bytes(chunk)


class DocumentMutator:
    def __init__(self, data: bytes):
        self._data = bytes(data)

    def to_bytes(self) -> bytes:
        return self._data

    def find_element(self, element: str) -> StartTag:
        """First `element` start tag; the whole document is validated."""
        found = None
        for event in BinaryXml(self._data).events():
            if isinstance(event, Invalid):
                raise event.error
            if found is None and isinstance(event, StartTag) and event.name == element:
                found = event
        if found is not None:
            return found
        raise ElementNotFound("No {} element found!".format(element))

    def set_attribute(self, element: str, name: str, value: TypedValue,
                      namespace: Optional[str] = None, resource_id: Optional[int] = None) -> None:
        """Set `name` on the first `element` start tag, inserting it if absent.

        With a `resource_id` the attribute is matched by resource id, otherwise
        by name and namespace.
        """
        target = self.find_element(element)
        layout = _Layout(self._data)
        pool, _ = StringPool.decode(self._data, layout.pool.offset)
        resource_ids = list(decode_resource_map(self._data, layout.resource_map)) if layout.resource_map else []
        additions: List[str] = []

        def intern(s: str, attribute_name: bool = False, resource: Optional[int] = None) -> int:
            # an attribute name's index also selects its resource id
            for i in pool.indices_of(s):
                mapped = resource_ids[i] if i < len(resource_ids) else 0
                if not attribute_name or mapped == (resource or 0):
                    return i
            if s in additions and resource is None:
                return len(pool) + additions.index(s)
            additions.append(s)
            idx = len(pool) + len(additions) - 1
            if resource is not None:
                resource_ids.extend([0] * (idx - len(resource_ids)))
                resource_ids.append(resource)
            return idx

        if resource_id is not None:
            existing = target.find_resource(resource_id)
        else:
            existing = target.get_attribute(name, namespace)

        value_ref = intern(value.string or "") if value.type == ValueType.STRING else None
        raw = NO_ENTRY if value_ref is None else value_ref
        data_word = value.data if value_ref is None else value_ref

        buf = bytearray(self._data)
        replacements: Dict[int, bytes] = {}
        if existing is not None:
            logger.debug("updating attribute [{}] of [{}] in place", existing.name, element)
            (a_ns, a_name, _, _, _, _, _) = ATTRIBUTE.unpack_from(buf, existing.offset)
            ATTRIBUTE.pack_into(buf, existing.offset, a_ns, a_name, raw, RES_VALUE_SIZE, 0, value.type, data_word)
        else:
            name_ref = intern(name, attribute_name=True, resource=resource_id)
            ns_ref = intern(namespace) if namespace is not None else NO_ENTRY
            index = _insertion_index(target, resource_id)
            logger.debug("inserting attribute [{}] into [{}] at position {}", name, element, index)
            record = ATTRIBUTE.pack(ns_ref, name_ref, raw, RES_VALUE_SIZE, 0, value.type, data_word)
            replacements[target.offset] = _insert_attribute(buf, target, index, record)

        if additions:
            logger.debug("appending strings {} to the string pool", additions)
            replacements[layout.pool.offset] = append_strings(buf, layout.pool.offset, additions)
        after_pool = b""
        if layout.resource_map is not None and len(resource_ids) != (layout.resource_map.size - layout.resource_map.header_size) // 4:
            replacements[layout.resource_map.offset] = _encode_resource_map(layout.resource_map, buf, resource_ids)
        elif layout.resource_map is None and resource_ids:
            after_pool = _encode_resource_map(None, buf, resource_ids)
        self._data = layout.assemble(buf, replacements, after_pool)
