#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# MediaLink - Resumable media uploads for remote analysis
# Copyright (C) 2025 MediaLink contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Uncompressed ustar streaming with cold-start resume.

The archive layout is fully determined by the entry names and declared sizes, so
the total size is known before any byte is produced and the stream can start at
any offset without generating the bytes before it.
"""

import re

from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator, Optional, Union

from medialink.Kernel import getLogger

logger = getLogger(__name__)

TAR_BLOCK_SIZE = 512
TAR_END_MARKER_SIZE = 2 * TAR_BLOCK_SIZE
TAR_NAME_SIZE = 100

# Largest value of an 11-digit octal numeric field (8 GiB - 1)
TAR_MAX_NUMERIC = 0o77777777777

REGULAR_FILE_MODE = 0o644
REGULAR_FILE_TYPE = b'0'
USTAR_MAGIC = b'ustar\x00'
USTAR_VERSION = b'00'

CHECKSUM_OFFSET = 148
CHECKSUM_SIZE = 8

# Consecutive zero-length reads tolerated before the stream is considered broken
MAX_EMPTY_READS = 50

SAFE_NAME_PATTERN = re.compile(r'[A-Za-z0-9._-]{1,100}')


class InvalidTarEntryError(ValueError):
    """Raised when an entry cannot be represented in a simple ustar header"""
    pass


class SourceChangedError(RuntimeError):
    """Raised when a file-backed entry no longer matches its declared size while streaming"""

    def __init__(self, message: str, filePath: str = None):
        super().__init__(message)
        self.filePath = filePath


class TarStreamError(RuntimeError):
    """Raised when the stream stops making progress"""
    pass


class TarPhase(Enum):
    """Region of the archive a cursor is in"""
    HEADER = auto()
    CONTENT = auto()
    PADDING = auto()
    END = auto() # Trailing zero blocks


# =============================================================================
# Header codec
# =============================================================================


def _octalField(value: int, width: int) -> bytes:
    """Zero-padded octal digits terminated by NUL, filling exactly `width` bytes"""
    digits = format(value, 'o').zfill(width - 1)
    if len(digits) > width - 1:
        raise InvalidTarEntryError(f"Value {value} does not fit a {width}-byte tar field")
    return digits.encode('ascii') + b'\x00'


def computeTarChecksum(block: bytes) -> int:
    """Checksum of a 512-byte header, counting the checksum field itself as spaces"""
    checksumEnd = CHECKSUM_OFFSET + CHECKSUM_SIZE
    return sum(block[:CHECKSUM_OFFSET]) + ord(' ') * CHECKSUM_SIZE + sum(block[checksumEnd:TAR_BLOCK_SIZE])


def makeTarHeader(name: str, size: int, mtime: int) -> bytes:
    """
    Render the ustar header block of a regular file

    Args:
        name: Entry name, at most 100 bytes of UTF-8
        size: Content size in bytes
        mtime: Modification time in Unix seconds (negative values are clamped to 0)

    Returns:
        bytes: 512-byte header, identical for identical inputs
    """
    nameBytes = name.encode('utf-8')
    if not nameBytes or len(nameBytes) > TAR_NAME_SIZE:
        raise InvalidTarEntryError(f"Tar entry name must be 1..{TAR_NAME_SIZE} bytes: {name!r}")

    header = bytearray(TAR_BLOCK_SIZE)
    header[0:len(nameBytes)] = nameBytes
    header[100:108] = _octalField(REGULAR_FILE_MODE, 8)
    header[108:116] = _octalField(0, 8) # uid
    header[116:124] = _octalField(0, 8) # gid
    header[124:136] = _octalField(size, 12)
    header[136:148] = _octalField(max(0, int(mtime)), 12)
    header[CHECKSUM_OFFSET:CHECKSUM_OFFSET + CHECKSUM_SIZE] = b' ' * CHECKSUM_SIZE
    header[156:157] = REGULAR_FILE_TYPE
    header[257:263] = USTAR_MAGIC
    header[263:265] = USTAR_VERSION

    # 6 octal digits, NUL, space
    checksum = format(computeTarChecksum(header), 'o').zfill(6).encode('ascii')
    header[CHECKSUM_OFFSET:CHECKSUM_OFFSET + CHECKSUM_SIZE] = checksum + b'\x00 '

    return bytes(header)


# =============================================================================
# Entries
# =============================================================================


@dataclass(frozen=True)
class BufferSource:
    """In-memory payload"""
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class FileSource:
    """On-disk payload, size is declared up front and never re-checked against the filesystem"""
    path: str
    size: int


@dataclass(frozen=True)
class TarEntry:
    name: str
    source: Union[BufferSource, FileSource]
    mtime: int = 0

    @property
    def size(self) -> int:
        return self.source.size

    @classmethod
    def fromBuffer(cls, name: str, data: bytes, mtime: int = 0) -> 'TarEntry':
        return cls(name, BufferSource(bytes(data)), mtime)

    @classmethod
    def fromFile(cls, name: str, path: str, size: int, mtime: int = 0) -> 'TarEntry':
        return cls(name, FileSource(path, size), mtime)


def isSafeTarName(name) -> bool:
    """Plain basenames of [A-Za-z0-9._-] only, at most 100 bytes"""
    if not isinstance(name, str) or name in ('.', '..'):
        return False
    if not SAFE_NAME_PATTERN.fullmatch(name):
        return False
    return len(name.encode('utf-8')) <= TAR_NAME_SIZE


def computePaddingSize(size: int) -> int:
    """Zero bytes needed to round `size` up to the next block boundary"""
    return -size % TAR_BLOCK_SIZE


def computeTarSize(entries) -> int:
    """
    Total archive size without building a layout

    Args:
        entries: Iterable of TarEntry

    Returns:
        int: Bytes of all headers, contents, paddings and the end marker
    """
    total = 0
    for entry in entries:
        total += TAR_BLOCK_SIZE + entry.size + computePaddingSize(entry.size)
    return total + TAR_END_MARKER_SIZE


# =============================================================================
# Layout
# =============================================================================


@dataclass(frozen=True)
class TarLayoutEntry:
    name: str
    header: bytes
    source: Union[BufferSource, FileSource]
    headerStart: int
    contentStart: int
    contentSize: int
    paddingSize: int

    @property
    def totalSize(self) -> int:
        return TAR_BLOCK_SIZE + self.contentSize + self.paddingSize


class TarLayout:
    """
    Coordinate table of a tar archive.

    Every entry is header (512) + content (declared size) + padding (to 512), followed
    by the 1024-byte end marker. The table only holds offsets and the rendered headers,
    content is read by TarCursor on demand.
    """

    def __init__(self, entries: list, totalSize: int):
        self.entries = entries
        self.totalSize = totalSize
        self.endStart = totalSize - TAR_END_MARKER_SIZE
        self._headerStarts = [entry.headerStart for entry in entries]

    @classmethod
    def build(cls, entries) -> 'TarLayout':
        """
        Validate entries and compute their offsets.

        All names and sizes are checked before any offset is computed, so an invalid
        entry anywhere in the list fails the whole build.

        Raises:
            InvalidTarEntryError: If a name is unsafe or a size does not fit the header
        """
        entries = list(entries)

        for entry in entries:
            if not isSafeTarName(entry.name):
                raise InvalidTarEntryError(f"Invalid tar entry name: {entry.name!r}")
            if entry.size < 0 or entry.size > TAR_MAX_NUMERIC:
                raise InvalidTarEntryError(f"Invalid size for tar entry {entry.name}: {entry.size}")

        layoutEntries = []
        offset = 0

        for entry in entries:
            layoutEntry = TarLayoutEntry(
                name=entry.name,
                header=makeTarHeader(entry.name, entry.size, entry.mtime),
                source=entry.source,
                headerStart=offset,
                contentStart=offset + TAR_BLOCK_SIZE,
                contentSize=entry.size,
                paddingSize=computePaddingSize(entry.size),
            )
            layoutEntries.append(layoutEntry)
            offset += layoutEntry.totalSize

        totalSize = offset + TAR_END_MARKER_SIZE

        logger.debug(f"TarLayout built: totalSize={totalSize}, entries={len(layoutEntries)}")

        return cls(layoutEntries, totalSize)

    def locate(self, offset: int) -> tuple:
        """
        Find the phase containing a byte offset (binary search over entry starts)

        Args:
            offset: Byte offset, 0 <= offset <= totalSize

        Returns:
            tuple: (TarPhase, entry index, offset within the phase)

        Raises:
            ValueError: If offset is out of range
        """
        if offset < 0 or offset > self.totalSize:
            raise ValueError(f"Offset {offset} out of range [0, {self.totalSize}]")

        if offset >= self.endStart:
            return TarPhase.END, len(self.entries), offset - self.endStart

        index = bisect_right(self._headerStarts, offset) - 1
        entry = self.entries[index]

        relative = offset - entry.headerStart
        if relative < TAR_BLOCK_SIZE:
            return TarPhase.HEADER, index, relative

        relative -= TAR_BLOCK_SIZE
        if relative < entry.contentSize:
            return TarPhase.CONTENT, index, relative

        return TarPhase.PADDING, index, relative - entry.contentSize


# =============================================================================
# Stream
# =============================================================================


class TarCursor:
    """
    Single-pass read position inside a TarLayout.

    The file of a file-backed entry is opened on the first content read and closed as
    soon as its content is exhausted, or when the cursor is closed. Use as a context
    manager so the handle is released on every exit path.
    """

    def __init__(self, layout: TarLayout, offset: int = 0):
        self.layout = layout
        self.phase, self.entryIndex, self.phaseOffset = layout.locate(offset)
        self.position = offset
        self.fileHandle = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()
        return False

    def __repr__(self):
        return (
            f"<TarCursor position={self.position} phase={self.phase.name} "
            f"entry={self.entryIndex} phaseOffset={self.phaseOffset}>"
        )

    @property
    def exhausted(self) -> bool:
        return self.phase == TarPhase.END and self.phaseOffset >= TAR_END_MARKER_SIZE

    def close(self):
        if self.fileHandle is not None:
            try:
                self.fileHandle.close()
            finally:
                self.fileHandle = None

    def read(self, maxBytes: int) -> bytes:
        """
        Read up to maxBytes from the current phase and advance.

        Never crosses a phase boundary, so a read may return fewer bytes than asked.
        An empty result means a phase transition happened (or the archive is exhausted).
        """
        want = max(1, int(maxBytes))

        if self.phase == TarPhase.END:
            data = self._readEnd(want)
        else:
            entry = self.layout.entries[self.entryIndex]
            if self.phase == TarPhase.HEADER:
                data = self._readHeader(entry, want)
            elif self.phase == TarPhase.CONTENT:
                data = self._readContent(entry, want)
            else:
                data = self._readPadding(entry, want)

        self.position += len(data)
        return data

    def _readHeader(self, entry: TarLayoutEntry, want: int) -> bytes:
        data = entry.header[self.phaseOffset:self.phaseOffset + want]
        self.phaseOffset += len(data)
        if self.phaseOffset >= TAR_BLOCK_SIZE:
            self.phase = TarPhase.CONTENT
            self.phaseOffset = 0
        return data

    def _readContent(self, entry: TarLayoutEntry, want: int) -> bytes:
        remaining = entry.contentSize - self.phaseOffset
        if remaining <= 0:
            self._finishContent()
            return b''

        take = min(want, remaining)

        if isinstance(entry.source, BufferSource):
            data = bytes(entry.source.data[self.phaseOffset:self.phaseOffset + take])
        else:
            data = self._openFile(entry).read(take)
            if not data:
                raise SourceChangedError(
                    f"File ended at {self.phaseOffset} of {entry.contentSize} declared bytes: {entry.source.path}",
                    entry.source.path
                )

        self.phaseOffset += len(data)
        if self.phaseOffset >= entry.contentSize:
            self._finishContent()
        return data

    def _readPadding(self, entry: TarLayoutEntry, want: int) -> bytes:
        remaining = entry.paddingSize - self.phaseOffset
        if remaining <= 0:
            self._nextEntry()
            return b''

        take = min(want, remaining)
        self.phaseOffset += take
        if self.phaseOffset >= entry.paddingSize:
            self._nextEntry()
        return bytes(take)

    def _readEnd(self, want: int) -> bytes:
        remaining = TAR_END_MARKER_SIZE - self.phaseOffset
        if remaining <= 0:
            return b''

        take = min(want, remaining)
        self.phaseOffset += take
        return bytes(take)

    def _openFile(self, entry: TarLayoutEntry):
        if self.fileHandle is None:
            self.fileHandle = open(entry.source.path, 'rb')
            if self.phaseOffset > 0:
                self.fileHandle.seek(self.phaseOffset)
        return self.fileHandle

    def _finishContent(self):
        self.close()
        self.phase = TarPhase.PADDING
        self.phaseOffset = 0

    def _nextEntry(self):
        self.entryIndex += 1
        self.phaseOffset = 0
        self.phase = TarPhase.END if self.entryIndex >= len(self.layout.entries) else TarPhase.HEADER


class TarStream:
    """
    Lazily generated tar archive over in-memory and on-disk entries.

    Usage:
        stream = TarStream(entries)
        for chunk in stream.iterChunks(chunkSize, start=serverOffset):
            ...
    """

    contentType = 'application/x-tar'

    def __init__(self, entries):
        """
        Args:
            entries: Ordered TarEntry list, archive order follows it

        Raises:
            InvalidTarEntryError: If any entry is invalid, before any byte can be produced
        """
        self.layout = TarLayout.build(entries)

    @property
    def size(self) -> int:
        return self.layout.totalSize

    def openCursor(self, start: int = 0) -> TarCursor:
        return TarCursor(self.layout, start)

    def iterChunks(self, chunkSize: int, start: int = 0) -> Iterator[bytes]:
        """
        Iterate archive bytes from `start` to the end

        Every chunk is min(chunkSize, bytes remaining) long. The generator is single-pass;
        resuming elsewhere needs a new call. Abandoning it early closes any open file.

        Args:
            chunkSize: Maximum bytes per chunk
            start: Starting byte offset (0 for the whole archive)

        Yields:
            bytes: Archive chunks

        Raises:
            ValueError: If start is negative
            SourceChangedError: If a file is shorter than its declared size
            TarStreamError: If the cursor stops making progress
        """
        if start < 0:
            raise ValueError(f"Negative offset not supported: {start}")

        chunkSize = max(1, int(chunkSize))
        totalSize = self.size
        if start >= totalSize:
            return

        logger.debug(f"Tar stream START: start={start}, chunkSize={chunkSize}, totalSize={totalSize}")

        with self.openCursor(start) as cursor:
            position = start
            while position < totalSize:
                remaining = min(chunkSize, totalSize - position)
                parts = []
                emptyReads = 0

                while remaining > 0:
                    data = cursor.read(remaining)
                    if not data:
                        emptyReads += 1
                        if emptyReads > MAX_EMPTY_READS:
                            raise TarStreamError(f"Tar stream stalled at offset {cursor.position}: {cursor!r}")
                        continue

                    emptyReads = 0
                    parts.append(data)
                    remaining -= len(data)
                    position += len(data)

                yield parts[0] if len(parts) == 1 else b''.join(parts)

        logger.debug("Tar stream END")

    def read(self, start: int = 0, length: Optional[int] = None) -> bytes:
        """Materialize a byte range, meant for small archives and tests"""
        end = self.size if length is None else min(self.size, start + length)
        if start >= end:
            return b''

        chunks = self.iterChunks(end - start, start)
        try:
            return next(chunks)
        finally:
            chunks.close()
