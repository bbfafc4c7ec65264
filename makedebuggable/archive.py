"""Random access to the entries of a zip container.

Every operation opens the container for its own duration only and scans
the entry list from the start; nothing is cached between calls. There is no
locking: callers must not run two writers against the same container.
"""

import copy
import os
import shutil
import tempfile
import time
import zlib
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional, Tuple
from zipfile import ZIP_DEFLATED, BadZipFile, ZipFile, ZipInfo

from loguru import logger

from .errors import ArchiveUnreadable, EntryNotFound, EntryReadError, InvalidDestination

BUFFER_SIZE = 8192


@dataclass(frozen=True)
class EntryInfo:
    path: str
    compressed_size: int
    uncompressed_size: int
    compress_type: int
    crc: int

    @classmethod
    def from_zipinfo(cls, info: ZipInfo) -> "EntryInfo":
        return cls(info.filename, info.compress_size, info.file_size, info.compress_type, info.CRC)


def _copy_stream(source: BinaryIO, destination: BinaryIO) -> int:
    written = 0
    while chunk := source.read(BUFFER_SIZE):
        destination.write(chunk)
        written += len(chunk)
    return written


def _locate(zf: ZipFile, path: str) -> Optional[ZipInfo]:
    for info in zf.infolist():
        if info.filename == path:
            return info
    return None


def _check_destination(destination_dir: str) -> None:
    if os.path.exists(destination_dir) and not os.path.isdir(destination_dir):
        logger.warning("destination [{}] is not a directory", destination_dir)
        raise InvalidDestination("path must be a directory or must not exist: {}".format(destination_dir))


def _destination_path(destination_dir: str, path: str) -> str:
    root = os.path.realpath(destination_dir)
    target = os.path.realpath(os.path.join(root, path))
    if os.path.commonpath([root, target]) != root:
        raise InvalidDestination("entry [{}] escapes destination {}".format(path, destination_dir))
    return target


class ArchiveStore:
    def __init__(self, path: str):
        self.path = path

    def exists(self) -> bool:
        return os.path.exists(self.path)

    @contextmanager
    def _open(self) -> Iterator[ZipFile]:
        try:
            zf = ZipFile(self.path, "r")
        except (BadZipFile, OSError) as e:
            logger.warning("unable to open archive [{}]: {}", self.path, e)
            raise ArchiveUnreadable("unable to open archive {}: {}".format(self.path, e)) from e
        with zf:
            yield zf

    def list_entries(self) -> List[Tuple[str, EntryInfo]]:
        logger.debug("list_entries, archive [{}]", self.path)
        if not self.exists():
            return []
        with self._open() as zf:
            return [(info.filename, EntryInfo.from_zipinfo(info)) for info in zf.infolist()]

    def contains(self, path: str) -> bool:
        logger.debug("contains, path [{}]", path)
        if not self.exists():
            return False
        with self._open() as zf:
            return _locate(zf, path) is not None

    def read_entry(self, path: str) -> bytes:
        logger.debug("read_entry, path [{}]", path)
        if not self.exists():
            raise EntryNotFound("archive does not exist: {}".format(self.path))
        with self._open() as zf:
            info = _locate(zf, path)
            if info is None:
                raise EntryNotFound("path does not exist in archive: {}".format(path))
            return self._read(zf, info)

    def _read(self, zf: ZipFile, info: ZipInfo) -> bytes:
        chunks = []
        try:
            with zf.open(info, "r") as f:
                while chunk := f.read(BUFFER_SIZE):
                    chunks.append(chunk)
        except (BadZipFile, EOFError, zlib.error) as e:
            logger.warning("unable to read [{}]: {}", info.filename, e)
            raise EntryReadError("unable to read full file in archive: {}: {}".format(info.filename, e)) from e
        data = b"".join(chunks)
        if len(data) != info.file_size:
            logger.warning("size mismatch for [{}]: declared {}, read {}", info.filename, info.file_size, len(data))
            raise EntryReadError("unable to read full file in archive: {} (declared {} bytes, read {})".format(
                info.filename, info.file_size, len(data)))
        return data

    def extract_entry(self, path: str, destination_dir: str) -> None:
        logger.debug("extract, path [{}] destination [{}]", path, destination_dir)
        _check_destination(destination_dir)
        self._write_file(destination_dir, path, self.read_entry(path))

    def extract_all(self, destination_dir: str) -> None:
        """Extract every entry; stops at the first failing entry and leaves
        files written before it in place."""
        logger.debug("extract_all, destination [{}]", destination_dir)
        _check_destination(destination_dir)
        for path, _ in self.list_entries():
            self.extract_entry(path, destination_dir)

    def _write_file(self, destination_dir: str, path: str, data: bytes) -> None:
        target = _destination_path(destination_dir, path)
        if path.endswith("/"):
            os.makedirs(target, exist_ok=True)
            return
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as f:
            f.write(data)

    def write_entry(self, path: str, source: BinaryIO, compress_type: Optional[int] = None) -> None:
        """Write `source` as entry `path`, replacing an existing entry of the
        same name. A missing container is created.

        The container is rebuilt in a temporary file next to it and renamed
        over the original, so a failing source leaves it untouched.
        """
        logger.debug("add, path [{}]", path)
        fd, tmp_path = tempfile.mkstemp(suffix=".tmp", dir=os.path.dirname(os.path.abspath(self.path)))
        os.close(fd)
        try:
            if self.exists():
                shutil.copymode(self.path, tmp_path)
                with self._open() as in_zip:
                    self._rewrite(tmp_path, path, source, compress_type, in_zip)
            else:
                self._rewrite(tmp_path, path, source, compress_type, None)
            os.replace(tmp_path, self.path)
        except BaseException:
            with suppress(FileNotFoundError):
                os.remove(tmp_path)
            raise

    def _add(self, zf: ZipFile, info: ZipInfo, source: BinaryIO) -> None:
        with zf.open(info, "w") as dest:
            written = _copy_stream(source, dest)
        logger.debug("wrote {} bytes to [{}]", written, info.filename)

    def _copy_entry(self, in_zip: ZipFile, out_zip: ZipFile, info: ZipInfo) -> None:
        try:
            with in_zip.open(info, "r") as f_in, out_zip.open(copy.copy(info), "w") as f_out:
                _copy_stream(f_in, f_out)
        except (BadZipFile, EOFError, zlib.error) as e:
            logger.warning("unable to copy [{}]: {}", info.filename, e)
            raise EntryReadError("unable to read full file in archive: {}: {}".format(info.filename, e)) from e

    def _rewrite(self, tmp_path: str, path: str, source: BinaryIO, compress_type: Optional[int],
                 in_zip: Optional[ZipFile]) -> None:
        with ZipFile(tmp_path, "w") as out_zip:
            replaced = False
            for info in in_zip.infolist() if in_zip is not None else []:
                if info.filename == path:
                    # duplicate names collapse into the single replacement
                    if not replaced:
                        logger.debug("replacing existing entry [{}] in [{}]", path, self.path)
                        self._add(out_zip, _new_info(path, info, compress_type), source)
                        replaced = True
                    continue
                self._copy_entry(in_zip, out_zip, info)
            if not replaced:
                self._add(out_zip, _new_info(path, None, compress_type), source)


def _new_info(path: str, template: Optional[ZipInfo], compress_type: Optional[int]) -> ZipInfo:
    if template is None:
        info = ZipInfo(path, date_time=time.localtime(time.time())[:6])
        info.compress_type = ZIP_DEFLATED if compress_type is None else compress_type
        info.external_attr = 0o644 << 16
        return info
    info = ZipInfo(path, date_time=template.date_time)
    info.compress_type = template.compress_type if compress_type is None else compress_type
    info.external_attr = template.external_attr
    info.create_system = template.create_system
    return info
