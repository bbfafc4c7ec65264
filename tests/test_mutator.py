"""
Unit tests for the document mutator.

Tests cover:
- Inserting a resource-bound attribute
- In-place rewrite of an existing attribute
- Byte-identical output for no-op mutations
- Resource map creation and padding
- Index fields of the start element
"""

import struct

import pytest

from makedebuggable.axml import ATTR_EXT, BinaryXml, StartTag, WalkState
from makedebuggable.errors import ElementNotFound, MalformedDocument
from makedebuggable.mutator import DocumentMutator, TypedValue
from makedebuggable.stringpool import StringPool
from tests import binxml
from tests.binxml import ANDROID_NS, DEBUGGABLE_RES_ID, LABEL_RES_ID, manifest


def start_tags(data):
    doc = BinaryXml(data)
    tags = {e.name: e for e in doc.events() if isinstance(e, StartTag)}
    assert doc.state is WalkState.END
    return tags, doc


def set_debuggable(data, flag=True):
    mutator = DocumentMutator(data)
    mutator.set_attribute("application", "debuggable", TypedValue.boolean(flag),
                          namespace=ANDROID_NS, resource_id=DEBUGGABLE_RES_ID)
    return mutator.to_bytes()


class TestInsert:
    """Tests for inserting a new attribute."""

    @pytest.mark.parametrize("utf8", [False, True])
    def test_insert_debuggable(self, utf8):
        """Inserted attribute is bound to its resource id and sorted after label."""
        patched = set_debuggable(manifest(utf8=utf8))
        tags, _ = start_tags(patched)
        attrs = tags["application"].attributes
        assert [a.name for a in attrs] == ["label", "debuggable"]
        assert attrs[1].resource_id == DEBUGGABLE_RES_ID
        assert attrs[1].namespace == ANDROID_NS
        assert attrs[1].value is True
        assert attrs[0].resource_id == LABEL_RES_ID

    def test_document_size_updated(self):
        original = manifest()
        patched = set_debuggable(original)
        (size,) = struct.unpack_from("<I", patched, 4)
        assert size == len(patched)
        # 20 bytes attribute, 4 bytes offset, 24 bytes string, 7 * 4 resource ids
        assert len(patched) == len(original) + 20 + 4 + 24 + 28

    def test_existing_indices_stable(self):
        """Strings keep their index; the new one is appended."""
        original = manifest()
        patched = set_debuggable(original)
        _, before = start_tags(original)
        _, after = start_tags(patched)
        assert len(after.pool) == len(before.pool) + 1
        for i in range(len(before.pool)):
            assert after.pool.resolve(i) == before.pool.resolve(i)
        assert after.pool.resolve(len(before.pool)) == "debuggable"
        assert list(after.resource_ids) == [LABEL_RES_ID] + [0] * 6 + [DEBUGGABLE_RES_ID]

    def test_other_elements_untouched(self):
        tags, _ = start_tags(set_debuggable(manifest()))
        assert tags["manifest"].get_attribute("package").value == "com.example"

    def test_creates_resource_map(self):
        """Without a resource map one is added after the pool."""
        original = manifest(with_resmap=False)
        patched = set_debuggable(original)
        tags, doc = start_tags(patched)
        attr = tags["application"].find_resource(DEBUGGABLE_RES_ID)
        assert attr is not None and attr.value is True
        pool_size = StringPool.decode(patched, 8)[1]
        (chunk_type,) = struct.unpack_from("<H", patched, 8 + pool_size)
        assert chunk_type == 0x0180
        assert len(doc.resource_ids) == len(doc.pool)

    def test_reuses_mapped_name(self):
        """A pool string already mapped to the resource id is reused."""
        strings = ["label", "debuggable", "android", ANDROID_NS, "application"]
        doc = binxml.document(
            binxml.string_pool(strings),
            binxml.resource_map([LABEL_RES_ID, DEBUGGABLE_RES_ID]),
            binxml.start_element(4, [binxml.attribute(3, 0, binxml.TYPE_REFERENCE, 0x7f010000)]),
            binxml.end_element(4),
        )
        patched = set_debuggable(doc)
        tags, after = start_tags(patched)
        assert len(after.pool) == len(strings)
        assert tags["application"].attributes[1].name == "debuggable"

    def test_unmapped_name_is_not_reused(self):
        """A plain 'debuggable' string without resource id gets a mapped twin."""
        strings = ["label", "android", ANDROID_NS, "application", "debuggable"]
        doc = binxml.document(
            binxml.string_pool(strings),
            binxml.resource_map([LABEL_RES_ID]),
            binxml.start_element(3, [binxml.attribute(2, 0, binxml.TYPE_REFERENCE, 0x7f010000)]),
            binxml.end_element(3),
        )
        tags, after = start_tags(set_debuggable(doc))
        assert len(after.pool) == len(strings) + 1
        assert tags["application"].find_resource(DEBUGGABLE_RES_ID).name == "debuggable"

    def test_shifts_id_index(self):
        """idIndex pointing behind the insertion point moves with its attribute."""
        strings = ["label", "id", ANDROID_NS, "application"]
        doc = binxml.document(
            binxml.string_pool(strings),
            binxml.resource_map([LABEL_RES_ID, 0x010100d0]),
            binxml.start_element(3, [
                binxml.attribute(2, 0, binxml.TYPE_REFERENCE, 0x7f010000),
                binxml.attribute(2, 1, binxml.TYPE_REFERENCE, 0x7f020000),
            ], id_index=2),
            binxml.end_element(3),
        )
        patched = set_debuggable(doc)
        tags, _ = start_tags(patched)
        application = tags["application"]
        assert [a.name for a in application.attributes] == ["label", "debuggable", "id"]
        fields = ATTR_EXT.unpack_from(patched, application.offset + 16)
        assert fields[4] == 3
        assert fields[5] == 3

    def test_string_attribute_without_resource(self):
        """Attributes without resource id are appended and may add strings."""
        mutator = DocumentMutator(manifest())
        mutator.set_attribute("application", "name", TypedValue.of_string("com.example.App"), namespace=ANDROID_NS)
        tags, _ = start_tags(mutator.to_bytes())
        attr = tags["application"].attributes[-1]
        assert attr.name == "name"
        assert attr.value == "com.example.App"
        assert attr.raw_value == "com.example.App"

    def test_insert_integer_attribute(self):
        mutator = DocumentMutator(manifest())
        mutator.set_attribute("manifest", "versionCode", TypedValue.integer(7))
        tags, _ = start_tags(mutator.to_bytes())
        assert tags["manifest"].get_attribute("versionCode").value == 7


class TestUpdate:
    """Tests for rewriting an existing attribute."""

    def test_false_becomes_true(self):
        """Only the value word of the attribute changes."""
        original = manifest(debuggable=False)
        patched = set_debuggable(original)
        assert len(patched) == len(original)
        attr = start_tags(original)[0]["application"].find_resource(DEBUGGABLE_RES_ID)
        changed = [i for i, (a, b) in enumerate(zip(original, patched)) if a != b]
        assert changed and all(attr.offset + 16 <= i < attr.offset + 20 for i in changed)
        assert start_tags(patched)[0]["application"].find_resource(DEBUGGABLE_RES_ID).value is True

    def test_noop_is_byte_identical(self):
        """Setting the value an attribute already has changes nothing."""
        original = manifest(debuggable=True)
        assert set_debuggable(original) == original

    def test_repeated_mutation(self):
        once = set_debuggable(manifest())
        assert set_debuggable(once) == once


class TestErrors:
    """Tests for failing mutations."""

    def test_element_not_found(self):
        with pytest.raises(ElementNotFound):
            set_debuggable(manifest(application=False))

    def test_malformed_document(self):
        with pytest.raises(MalformedDocument):
            set_debuggable(manifest()[:-10])

    def test_stray_end_tag_after_element(self):
        """Content after the target element is validated as well."""
        data = binxml.document(
            binxml.string_pool(["application", "stray"]),
            binxml.resource_map([]),
            binxml.start_element(0),
            binxml.end_element(0),
            binxml.end_element(1),
        )
        mutator = DocumentMutator(data)
        with pytest.raises(MalformedDocument):
            mutator.set_attribute("application", "debuggable", TypedValue.boolean(True),
                                  namespace=ANDROID_NS, resource_id=DEBUGGABLE_RES_ID)
        assert mutator.to_bytes() == data

    def test_unclosed_element_after_element(self):
        data = binxml.document(
            binxml.string_pool(["application", "activity"]),
            binxml.start_element(0),
            binxml.end_element(0),
            binxml.start_element(1, line=2),
        )
        with pytest.raises(MalformedDocument):
            DocumentMutator(data).find_element("application")
