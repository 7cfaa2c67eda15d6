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
Single-file and image-set uploads over the resumable upload protocol.

Several images are sent as one media-set archive: a tar whose first entry is a
JSON manifest followed by the images renamed 000001.<ext>, 000002.<ext>, ...
The archive is generated while uploading and can restart at any server offset.
"""

import errno
import json
import mimetypes
import os
import re
import time

from dataclasses import dataclass

from medialink.Client import UploadProtocolError
from medialink.Kernel import getLogger
from medialink.Progress import Progress
from medialink.Tar import TarEntry, TarStream, TarStreamError, computeTarSize
from medialink.Utils import getEnv, formatSize, ONE_MB

logger = getLogger(__name__)

MEDIA_SET_CONTENT_TYPE = 'application/vnd.enrivision.media-set+tar'
MEDIA_SET_FILENAME = 'enrivision-image-set.tar'
MEDIA_SET_MANIFEST_NAME = 'manifest.json'
MEDIA_SET_TYPE = 'enrivision_media_set'
MEDIA_SET_VERSION = 1
MEDIA_SET_MEDIA_TYPE = 'image_set'

DEFAULT_CONTENT_TYPE = 'application/octet-stream'

# Used when the server gives no chunk size hint
DEFAULT_CHUNK_SIZE = getEnv('UPLOAD_DEFAULT_CHUNK_SIZE', 8 * ONE_MB)

ENTRY_EXTENSION_PATTERN = re.compile(r'\.[a-z0-9.]+')
FALLBACK_EXTENSION = '.img'


class InputError(ValueError):
    """Raised when the given paths cannot form an upload"""
    pass


class NotAFileError(OSError):
    """Raised when a path exists but is not a regular file"""
    pass


class UploadStalledError(RuntimeError):
    """Raised when a pass sent chunks but the server offset did not advance"""
    pass


class UploadIncompleteError(RuntimeError):
    """Raised when the upload ends before the server offset reaches the declared size"""
    pass


def detectContentType(path):
    contentType, _ = mimetypes.guess_type(path)
    return contentType.strip() if contentType and contentType.strip() else DEFAULT_CONTENT_TYPE


def checkReadableFile(path) -> int:
    """
    Make sure `path` is a readable regular file

    Returns:
        int: File size in bytes, declared once and never re-checked

    Raises:
        FileNotFoundError: If the path does not exist
        NotAFileError: If the path is not a regular file
        PermissionError: If the file cannot be opened for reading
    """
    if not os.path.exists(path):
        raise FileNotFoundError(errno.ENOENT, 'File not found', path)
    if not os.path.isfile(path):
        raise NotAFileError(errno.EISDIR, 'Not a file', path)

    size = os.path.getsize(path)
    with open(path, 'rb'):
        pass
    return size


def makeEntryName(index, filename):
    """Archive name of the index-th image (1-based), keeping a lower-cased safe extension"""
    extension = os.path.splitext(filename)[1].lower()
    if not ENTRY_EXTENSION_PATTERN.fullmatch(extension):
        extension = FALLBACK_EXTENSION
    return f'{index:06d}{extension}'


def iterFileChunks(path, size, chunkSize, start=0):
    """Chunks of a file from `start` up to its declared size, stops early at EOF"""
    with open(path, 'rb') as f:
        f.seek(start)
        position = start
        while position < size:
            data = f.read(min(chunkSize, size - position))
            if not data:
                return
            position += len(data)
            yield data


@dataclass(frozen=True)
class MediaSetItem:
    index: int
    path: str
    filename: str
    contentType: str
    size: int
    entryName: str

    def toManifest(self) -> dict:
        return {
            'index': self.index,
            'name': self.entryName,
            'filename': self.filename,
            'content_type': self.contentType,
            'size_bytes': self.size,
        }


def buildMediaSetManifest(items) -> bytes:
    manifest = {
        'type': MEDIA_SET_TYPE,
        'version': MEDIA_SET_VERSION,
        'media_type': MEDIA_SET_MEDIA_TYPE,
        'items': [item.toManifest() for item in items],
    }
    return json.dumps(manifest, ensure_ascii=False, separators=(',', ':')).encode('utf-8')


def buildMediaSetEntries(paths, mtime=None) -> list:
    """
    Validate image paths and build the media-set archive entries

    Args:
        paths: At least two image file paths
        mtime: Entry modification time, defaults to now

    Returns:
        list: TarEntry list, manifest first

    Raises:
        InputError: If fewer than two paths are given or a file is not an image
    """
    if len(paths) < 2:
        raise InputError('An image set needs at least 2 files.')

    items = []
    for index, path in enumerate(paths, start=1):
        path = os.path.abspath(path)
        size = checkReadableFile(path)
        filename = os.path.basename(path)
        contentType = detectContentType(path)

        if not contentType.lower().startswith('image/'):
            raise InputError(f'Image sets accept only image files. Not an image: {path} ({contentType})')

        items.append(MediaSetItem(index, path, filename, contentType, size, makeEntryName(index, filename)))

    mtime = int(time.time()) if mtime is None else mtime

    entries = [TarEntry.fromBuffer(MEDIA_SET_MANIFEST_NAME, buildMediaSetManifest(items), mtime)]
    entries.extend(TarEntry.fromFile(item.entryName, item.path, item.size, mtime) for item in items)
    return entries


class MediaUploader:
    """
    Drive uploads through a ResumableUploadClient.

    The server offset is authoritative: after every chunk the returned offset is adopted,
    and when it differs from what the chunk should have produced the current pass is
    abandoned and a new one starts from the server's offset.
    """

    def __init__(self, client, chunkSize=None, onProgress=None, useProgressBar=False):
        """
        Args:
            client: ResumableUploadClient
            chunkSize: Upper bound for chunk sizes, the server hint wins when smaller
            onProgress: Callable(offset, total) invoked after each chunk, a Progress reporter by default
            useProgressBar: Show a tqdm bar instead of log lines for the default reporter
        """
        self.client = client
        self.chunkSize = chunkSize
        self.onProgress = onProgress
        self.useProgressBar = useProgressBar

    def upload(self, paths, clientTraceId=None):
        """Upload one file as-is, or several images as one media-set archive"""
        paths = [p for p in (paths or []) if p]
        if not paths:
            raise InputError('No file paths given.')

        if len(paths) == 1:
            return self.uploadFile(paths[0], clientTraceId)
        return self.uploadImageSet(paths, clientTraceId)

    def uploadFile(self, path, clientTraceId=None):
        """
        Upload a single file

        Returns:
            str: Upload id
        """
        path = os.path.abspath(path)
        size = checkReadableFile(path)
        filename = os.path.basename(path)
        contentType = detectContentType(path)

        logger.info(f"Uploading file: {path} ({formatSize(size)}, {contentType})")

        session = self.client.createUploadSession(filename, size, contentType, clientTraceId)

        def chunkSource(offset, chunkSize):
            return iterFileChunks(path, size, chunkSize, offset)

        self._drive(session, size, chunkSource, filename)
        return session.uploadId

    def uploadImageSet(self, paths, clientTraceId=None):
        """
        Upload several images as one media-set archive

        Returns:
            str: Upload id
        """
        entries = buildMediaSetEntries(paths)
        stream = TarStream(entries)

        totalSize = computeTarSize(entries)
        if stream.size != totalSize:
            raise TarStreamError(f"Archive size mismatch: layout {stream.size}, computed {totalSize}")

        logger.info(f"Uploading image set: {len(entries) - 1} images, archive {formatSize(totalSize)}")

        session = self.client.createUploadSession(
            MEDIA_SET_FILENAME, totalSize, MEDIA_SET_CONTENT_TYPE, clientTraceId
        )

        def chunkSource(offset, chunkSize):
            return stream.iterChunks(chunkSize, offset)

        self._drive(session, totalSize, chunkSource, MEDIA_SET_FILENAME)
        return session.uploadId

    def _resolveChunkSize(self, session):
        hint = session.chunkSize
        if self.chunkSize and hint:
            return max(1, min(self.chunkSize, hint))
        return max(1, int(self.chunkSize or hint or DEFAULT_CHUNK_SIZE))

    def _checkOffset(self, offset, totalSize):
        if offset < 0 or offset > totalSize:
            raise UploadProtocolError(f"Invalid server offset {offset} for an upload of {totalSize} bytes.")
        return offset

    def _drive(self, session, totalSize, chunkSource, description):
        """
        Push chunks from `chunkSource(offset, chunkSize)` until the server offset reaches totalSize

        Returns:
            int: Final server offset (== totalSize)
        """
        uploadId = session.uploadId
        chunkSize = self._resolveChunkSize(session)

        offset = self._checkOffset(self.client.getUploadOffset(uploadId), totalSize)
        if offset:
            logger.info(f"Resuming upload {uploadId} at offset {offset}/{totalSize}")

        progress = self.onProgress
        reporter = None
        if progress is None:
            reporter = progress = Progress(totalSize, initial=offset, description=description, useBar=self.useProgressBar)

        try:
            while offset < totalSize:
                passStart = offset
                sentChunks = 0

                chunks = chunkSource(offset, chunkSize)
                try:
                    for chunk in chunks:
                        if not chunk:
                            continue

                        expectedOffset = offset + len(chunk)
                        offset = self._checkOffset(self.client.appendChunk(uploadId, offset, chunk), totalSize)
                        sentChunks += 1
                        progress(offset, totalSize)

                        if offset != expectedOffset:
                            logger.info(f"Offset resync: expected {expectedOffset}, server is at {offset}")
                            break

                        if offset >= totalSize:
                            break
                finally:
                    chunks.close()

                if sentChunks == 0:
                    raise UploadIncompleteError(
                        f"Upload incomplete: source ended at {offset} of {totalSize} bytes."
                    )

                if offset <= passStart:
                    raise UploadStalledError(f"Upload stalled: server offset stuck at {offset} of {totalSize} bytes.")
        finally:
            if reporter is not None:
                reporter.finishBar(complete=offset >= totalSize)

        if offset != totalSize:
            raise UploadIncompleteError(f"Upload incomplete: sent {offset} of {totalSize} bytes.")

        logger.info(f"Upload {uploadId} complete ({formatSize(totalSize)})")
        return offset
