from loguru import logger

from .apk import Package, make_debuggable, open_package
from .archive import ArchiveStore, EntryInfo
from .axml import BinaryXml, BinaryXmlVisitor, WalkState, walk
from .errors import *  # noqa: F401,F403
from .mutator import DocumentMutator, TypedValue
from .stringpool import StringPool

__version__ = "1.0.0"

logger.disable("makedebuggable")
