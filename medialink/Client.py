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
Client for the resumable upload protocol and the analysis endpoint.

Protocol:
    POST  /v1/uploads           create a session, JSON in and out
    HEAD  /v1/uploads/<id>      current committed offset in Upload-Offset
    PATCH /v1/uploads/<id>      append one chunk at Upload-Offset, new offset in Upload-Offset
    POST  /v1/vision/analyze    analyze a completed upload

Every request carries a bearer credential. The server owns the offset, a 409 on
append means the client's cached offset is stale and must be re-queried.

Usage:
    client = ResumableUploadClient.fromSettings()
    session = client.createUploadSession('clip.mp4', size, 'video/mp4')
    offset = client.getUploadOffset(session.uploadId)
    offset = client.appendChunk(session.uploadId, offset, chunk)
"""

import time

from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote

import requests

from medialink.Kernel import getLogger
from medialink.Settings import SettingsGetter, ConfigurationError, DEFAULT_TIMEOUT_SECONDS, validateServerURL
from medialink.Utils import getEnv, StallResilientAdapter

logger = getLogger(__name__)

UPLOADS_PATH = '/v1/uploads'
ANALYZE_PATH = '/v1/vision/analyze'

OFFSET_CONTENT_TYPE = 'application/offset+octet-stream'

UPLOAD_OFFSET_HEADER = 'Upload-Offset'
UPLOAD_LENGTH_HEADER = 'Upload-Length'
UPLOAD_EXPIRES_HEADER = 'Upload-Expires'

# Chunk append retry policy, delay is min(base * 2^(attempt-1), max) seconds
UPLOAD_MAX_ATTEMPTS = getEnv('UPLOAD_MAX_ATTEMPTS', 5)
UPLOAD_RETRY_BASE_DELAY = getEnv('UPLOAD_RETRY_BASE_DELAY', 1.0)
UPLOAD_RETRY_MAX_DELAY = getEnv('UPLOAD_RETRY_MAX_DELAY', 10.0)


# =============================================================================
# Exceptions
# =============================================================================


class UploadAPIError(Exception):
    """Base exception for upload and analysis API errors"""

    def __init__(self, message, statusCode=None, response=None):
        super().__init__(message)
        self.statusCode = statusCode
        self.response = response


class BadRequestError(UploadAPIError):
    """Raised when the server rejects the request as malformed (400)"""
    pass


class UnauthenticatedError(UploadAPIError):
    """Raised when the bearer credential is missing or invalid (401)"""
    pass


class UnauthorizedError(UploadAPIError):
    """Raised when the credential lacks permission for the upload (403)"""
    pass


class UploadNotFoundError(UploadAPIError):
    """Raised when the upload session does not exist (404)"""
    pass


class OffsetConflictError(UploadAPIError):
    """Raised when the append offset does not match the server offset (409)"""
    pass


class UploadExpiredError(UploadAPIError):
    """Raised when the upload session has expired (410)"""
    pass


class ChunkTooLargeError(UploadAPIError):
    """Raised when a chunk exceeds what the server accepts (413)"""
    pass


class UploadProtocolError(UploadAPIError):
    """Raised when a successful response is missing or has malformed protocol fields"""
    pass


STATUS_ERRORS = {
    400: BadRequestError,
    401: UnauthenticatedError,
    403: UnauthorizedError,
    404: UploadNotFoundError,
    409: OffsetConflictError,
    410: UploadExpiredError,
    413: ChunkTooLargeError,
}

# Never retried, retrying cannot change the outcome
NON_RETRYABLE_ERRORS = (
    BadRequestError,
    UnauthenticatedError,
    UnauthorizedError,
    UploadNotFoundError,
    UploadExpiredError,
    ChunkTooLargeError,
)


def computeRetryDelay(attempt, baseDelay=UPLOAD_RETRY_BASE_DELAY, maxDelay=UPLOAD_RETRY_MAX_DELAY):
    """Delay in seconds before the attempt following `attempt` (1-based)"""
    return min(baseDelay * (2 ** (attempt - 1)), maxDelay)


def _parseOptionalInt(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parseOffsetHeader(response) -> int:
    value = response.headers.get(UPLOAD_OFFSET_HEADER)
    if value is None or not value.strip():
        raise UploadProtocolError(
            f"Missing {UPLOAD_OFFSET_HEADER} header in server response.", response.status_code, response
        )

    try:
        offset = int(value.strip(), 10)
    except ValueError:
        offset = -1

    if offset < 0:
        raise UploadProtocolError(f"Invalid {UPLOAD_OFFSET_HEADER} header: {value}", response.status_code, response)

    return offset


def _parseJson(response, action) -> dict:
    try:
        data = response.json()
    except ValueError as e:
        raise UploadProtocolError(f"{action}: invalid JSON response ({e})", response.status_code, response) from e

    if not isinstance(data, dict):
        raise UploadProtocolError(f"{action}: expected a JSON object", response.status_code, response)
    return data


# =============================================================================
# Data
# =============================================================================


@dataclass(frozen=True)
class UploadSession:
    uploadId: str
    chunkSize: Optional[int] = None # Server hint, None when missing or non-positive
    expiresAt: Optional[int] = None # Milliseconds since epoch

    @classmethod
    def fromJson(cls, data: dict, response=None) -> 'UploadSession':
        uploadId = data.get('upload_id')
        if not isinstance(uploadId, str) or not uploadId.strip():
            statusCode = response.status_code if response is not None else None
            raise UploadProtocolError("Upload session response has no upload_id.", statusCode, response)

        chunkSize = _parseOptionalInt(data.get('chunk_size_bytes'))
        if chunkSize is not None and chunkSize <= 0:
            chunkSize = None

        return cls(uploadId, chunkSize, _parseOptionalInt(data.get('expires_at')))


@dataclass(frozen=True)
class UploadStatus:
    offset: int
    length: Optional[int] = None
    expiresAt: Optional[str] = None

    @classmethod
    def fromResponse(cls, response) -> 'UploadStatus':
        return cls(
            offset=_parseOffsetHeader(response),
            length=_parseOptionalInt(response.headers.get(UPLOAD_LENGTH_HEADER)),
            expiresAt=response.headers.get(UPLOAD_EXPIRES_HEADER),
        )


@dataclass
class AnalysisResult:
    analysis: str
    mediaType: Optional[str] = None
    extraction: dict = field(default_factory=dict)
    uploadId: Optional[str] = None

    @classmethod
    def fromJson(cls, data: dict, uploadId=None) -> 'AnalysisResult':
        analysis = data.get('analysis')
        if not isinstance(analysis, str):
            raise UploadProtocolError("Analysis response has no analysis text.")

        extraction = data.get('extraction')
        mediaType = data.get('media_type')
        return cls(
            analysis=analysis,
            mediaType=mediaType if isinstance(mediaType, str) else None,
            extraction=extraction if isinstance(extraction, dict) else {},
            uploadId=uploadId,
        )

    def toDict(self) -> dict:
        return {'analysis': self.analysis, 'media_type': self.mediaType, 'extraction': self.extraction}


# =============================================================================
# Client
# =============================================================================


class ResumableUploadClient:
    """
    Session-based chunked upload client.

    appendChunk() is the retrying operation: fatal statuses raise at once, a 409 returns
    the re-queried server offset, everything else is retried with exponential backoff.
    """

    def __init__(
        self,
        serverURL,
        apiKey,
        timeout=DEFAULT_TIMEOUT_SECONDS,
        session=None,
        maxAttempts=UPLOAD_MAX_ATTEMPTS,
        retryBaseDelay=UPLOAD_RETRY_BASE_DELAY,
        retryMaxDelay=UPLOAD_RETRY_MAX_DELAY,
    ):
        if not apiKey:
            raise ConfigurationError('API key is required.')

        self.serverURL = validateServerURL(serverURL)
        self._apiKey = apiKey
        self.timeout = timeout
        self.maxAttempts = max(1, int(maxAttempts))
        self.retryBaseDelay = retryBaseDelay
        self.retryMaxDelay = retryMaxDelay

        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f'Bearer {self._apiKey}'
        self._mountAdapter()

    @classmethod
    def fromSettings(cls, settings=None, **kwargs):
        serverURL, apiKey, timeout = (settings or SettingsGetter.getInstance()).getConnectionSettings()
        return cls(serverURL, apiKey, timeout, **kwargs)

    def __repr__(self):
        return f'<ResumableUploadClient serverURL={self.serverURL!r} timeout={self.timeout}>'

    def close(self):
        self.session.close()

    def _mountAdapter(self, chunkSize=None):
        stallTimeoutMs = StallResilientAdapter.calculateStallTimeoutMs(chunkSize or 0)
        previous = [self.session.adapters.get(prefix) for prefix in ('http://', 'https://')]
        if all(
            isinstance(adapter, StallResilientAdapter) and adapter.stallTimeoutMs == stallTimeoutMs
            for adapter in previous
        ):
            return

        # PATCH is left out of urllib3 retries, appendChunk retries it with offset checks
        adapter = StallResilientAdapter(stallTimeoutMs=stallTimeoutMs, allowedMethods={'GET', 'HEAD'})
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

        for oldAdapter in {id(item): item for item in previous if item is not None}.values():
            oldAdapter.close()

    def _uploadPath(self, uploadId):
        return f"{UPLOADS_PATH}/{quote(uploadId, safe='')}"

    def _request(self, method, path, **kwargs):
        kwargs.setdefault('timeout', self.timeout)
        return self.session.request(method, f'{self.serverURL}{path}', **kwargs)

    def _raiseForStatus(self, response, action):
        statusCode = response.status_code
        if 200 <= statusCode < 300:
            return

        errorClass = STATUS_ERRORS.get(statusCode, UploadAPIError)
        message = f"{action} failed (HTTP {statusCode})."

        body = (response.text or '').strip()
        if body:
            message = f"{message} {body[:200]}"

        raise errorClass(message, statusCode, response)

    def createUploadSession(self, filename, size, contentType, clientTraceId=None) -> UploadSession:
        """
        Create a remote upload session sized to `size` bytes

        Returns:
            UploadSession: Upload id, chunk size hint and expiry
        """
        payload = {
            'filename': filename,
            'size_bytes': size,
            'content_type': contentType,
        }
        if clientTraceId:
            payload['client_trace_id'] = clientTraceId

        response = self._request('POST', UPLOADS_PATH, json=payload)
        self._raiseForStatus(response, 'Create upload session')

        session = UploadSession.fromJson(_parseJson(response, 'Create upload session'), response)

        if session.chunkSize:
            self._mountAdapter(session.chunkSize)

        logger.info(
            f"Upload session created: id={session.uploadId}, filename={filename}, "
            f"size={size}, chunkSize={session.chunkSize}"
        )
        return session

    def getUploadStatus(self, uploadId) -> UploadStatus:
        response = self._request('HEAD', self._uploadPath(uploadId))
        self._raiseForStatus(response, 'Query upload offset')
        return UploadStatus.fromResponse(response)

    def getUploadOffset(self, uploadId) -> int:
        return self.getUploadStatus(uploadId).offset

    def appendChunkOnce(self, uploadId, offset, chunk) -> int:
        """
        Append one chunk with no retry

        Returns:
            int: Server offset after the append

        Raises:
            UploadAPIError: Status-specific subclass for non-2xx responses
            UploadProtocolError: If Upload-Offset is missing or malformed
        """
        headers = {
            'Content-Type': OFFSET_CONTENT_TYPE,
            UPLOAD_OFFSET_HEADER: str(offset),
            'Content-Length': str(len(chunk)),
        }
        response = self._request('PATCH', self._uploadPath(uploadId), data=chunk, headers=headers)
        self._raiseForStatus(response, 'Upload chunk')
        return _parseOffsetHeader(response)

    def appendChunk(self, uploadId, offset, chunk) -> int:
        """
        Append one chunk, retrying transient failures

        The returned offset may differ from offset + len(chunk) after a conflict, the caller
        must continue from the returned value.

        Returns:
            int: Authoritative server offset
        """
        lastError = None

        for attempt in range(1, self.maxAttempts + 1):
            try:
                return self.appendChunkOnce(uploadId, offset, chunk)
            except OffsetConflictError:
                serverOffset = self.getUploadOffset(uploadId)
                logger.warning(f"Offset conflict at {offset}, server offset is {serverOffset}")
                return serverOffset
            except NON_RETRYABLE_ERRORS:
                raise
            except (UploadAPIError, requests.exceptions.RequestException) as e:
                lastError = e
                if attempt >= self.maxAttempts:
                    break

                delay = computeRetryDelay(attempt, self.retryBaseDelay, self.retryMaxDelay)
                logger.warning(
                    f"Chunk append at offset {offset} failed: {e}; "
                    f"retry {attempt + 1}/{self.maxAttempts} after {delay:.1f}s"
                )
                time.sleep(delay)

        logger.error(f"Chunk append at offset {offset} failed after {self.maxAttempts} attempts: {lastError}")
        raise lastError

    def analyze(self, uploadId, options=None) -> AnalysisResult:
        """
        Request analysis of a completed upload

        Args:
            uploadId: Upload session id
            options: Payload dict, or an object with toPayload() (AnalysisOptions)
        """
        if options is None:
            payload = {}
        elif isinstance(options, dict):
            payload = dict(options)
        else:
            payload = options.toPayload()

        payload['upload_id'] = uploadId

        logger.info(f"Requesting analysis: uploadId={uploadId}, fields={sorted(payload)}")

        response = self._request('POST', ANALYZE_PATH, json=payload)
        self._raiseForStatus(response, 'Vision analysis')
        return AnalysisResult.fromJson(_parseJson(response, 'Vision analysis'), uploadId)
