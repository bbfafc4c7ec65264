# in order for the application to be counted as debuggable the application
# tag needs to contain an attribute whose resource id is the debuggable res id
# with a boolean true value. Re-signing the package afterwards is left to the
# caller (see signer.py).

from io import BytesIO
from typing import Optional

from loguru import logger

from .archive import ArchiveStore
from .axml import (
    Attribute,
    BinaryXml,
    BinaryXmlVisitor,
    CharacterData,
    EndTag,
    Invalid,
    StartTag,
    ValueType,
    WalkState,
)
from .errors import DocumentMalformed, DocumentMissing, RequiredElementMissing
from .mutator import DocumentMutator, TypedValue

ANDROID_MANIFEST = "AndroidManifest.xml"
ANDROID_MANIFEST_TAG_APPLICATION = "application"
ANDROID_NS_STRING = "http://schemas.android.com/apk/res/android"
DEBUGGABLE_STRING = "debuggable"
DEBUGGABLE_RES_ID = 0x0101000f


def is_debuggable_attribute(attr: Optional[Attribute]) -> bool:
    return attr is not None and attr.value_type == ValueType.INT_BOOLEAN and attr.data != 0


class ManifestVisitor(BinaryXmlVisitor):
    def __init__(self, source: str):
        self.source = source
        self.application: Optional[StartTag] = None

    def on_start_tag(self, element: StartTag) -> None:
        logger.debug("traverse start tag element [{}]", element.name)
        if element.name == ANDROID_MANIFEST_TAG_APPLICATION and self.application is None:
            logger.debug("found application tag")
            self.application = element

    def on_end_tag(self, element: EndTag) -> None:
        logger.debug("traverse end tag element [{}]", element.name)

    def on_character_data(self, element: CharacterData) -> None:
        logger.debug("traverse cdata element [{}]", element.text)

    def on_invalid(self, element: Invalid) -> None:
        logger.warning("traverse invalid element [{}]", element.description)
        raise DocumentMalformed(self.source) from element.error

    @property
    def debuggable(self) -> bool:
        return self.application is not None and \
            is_debuggable_attribute(self.application.find_resource(DEBUGGABLE_RES_ID))


def inspect_manifest(document: bytes, source: str = ANDROID_MANIFEST) -> ManifestVisitor:
    visitor = ManifestVisitor(source)
    if BinaryXml(document).walk(visitor) is WalkState.FAILED:
        raise DocumentMalformed(source)
    if visitor.application is None:
        logger.warning("unable to find application tag in [{}]", source)
        raise RequiredElementMissing(source, ANDROID_MANIFEST_TAG_APPLICATION)
    return visitor


def make_debuggable(document: bytes, source: str = ANDROID_MANIFEST) -> bytes:
    """Return `document` with android:debuggable="true" set on <application>.

    An already debuggable document is returned unchanged.
    """
    if inspect_manifest(document, source).debuggable:
        logger.info("[{}] is already debuggable", source)
        return document
    mutator = DocumentMutator(document)
    mutator.set_attribute(ANDROID_MANIFEST_TAG_APPLICATION, DEBUGGABLE_STRING, TypedValue.boolean(True),
                          namespace=ANDROID_NS_STRING, resource_id=DEBUGGABLE_RES_ID)
    return mutator.to_bytes()


class Package:
    def __init__(self, path: str):
        self.path = path
        self.archive = ArchiveStore(path)

    def locate_required_document(self, document_path: str = ANDROID_MANIFEST) -> bytes:
        if not self.archive.contains(document_path):
            logger.warning("unable to find manifest in [{}]", self.path)
            raise DocumentMissing(self.path)
        contents = self.archive.read_entry(document_path)
        if not contents:
            logger.warning("unable to read [{}]", self.path)
            raise DocumentMissing(self.path)
        return contents

    def is_debuggable(self) -> bool:
        return inspect_manifest(self.locate_required_document(), self.path).debuggable

    def patch_to_debuggable(self) -> bool:
        """Make the package debuggable; returns False if it already was.

        The manifest entry is only rewritten after decoding and patching
        succeeded. The package signature is invalid afterwards.
        """
        document = self.locate_required_document()
        patched = make_debuggable(document, self.path)
        if patched is document:
            return False
        logger.info("Patching {} in [{}] ...", ANDROID_MANIFEST, self.path)
        self.archive.write_entry(ANDROID_MANIFEST, BytesIO(patched))
        return True


def open_package(path: str) -> Package:
    return Package(path)
