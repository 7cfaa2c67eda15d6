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

import unittest

from unittest.mock import patch, call

import requests
import requests_mock

from medialink.Client import (
    ResumableUploadClient, UploadAPIError, BadRequestError, UnauthenticatedError, UnauthorizedError,
    UploadNotFoundError, UploadExpiredError, ChunkTooLargeError, UploadProtocolError, computeRetryDelay
)
from medialink.Settings import ConfigurationError

SERVER_URL = 'http://upload.test'
API_KEY = 'sk-test-secret-key'
UPLOAD_URL = f'{SERVER_URL}/v1/uploads/up-1'


class ResumableUploadClientTest(unittest.TestCase):

    def setUp(self):
        self.client = ResumableUploadClient(SERVER_URL + '/', API_KEY, timeout=30)

        sleepPatcher = patch('medialink.Client.time.sleep')
        self.sleep = sleepPatcher.start()
        self.addCleanup(sleepPatcher.stop)

    def testCreateUploadSession(self):
        with requests_mock.Mocker() as m:
            m.post(
                f'{SERVER_URL}/v1/uploads',
                json={'upload_id': 'up-1', 'chunk_size_bytes': 1048576, 'expires_at': 1700000000000}
            )

            session = self.client.createUploadSession('clip.mp4', 1234, 'video/mp4', 'medialink_trace')

            self.assertEqual(session.uploadId, 'up-1')
            self.assertEqual(session.chunkSize, 1048576)
            self.assertEqual(session.expiresAt, 1700000000000)

            request = m.last_request
            self.assertEqual(request.headers['Authorization'], f'Bearer {API_KEY}')
            self.assertEqual(
                request.json(), {
                    'filename': 'clip.mp4',
                    'size_bytes': 1234,
                    'content_type': 'video/mp4',
                    'client_trace_id': 'medialink_trace',
                }
            )

    def testCreateOmitsMissingTraceId(self):
        with requests_mock.Mocker() as m:
            m.post(f'{SERVER_URL}/v1/uploads', json={'upload_id': 'up-1', 'chunk_size_bytes': 0})

            session = self.client.createUploadSession('a.png', 10, 'image/png')

            self.assertNotIn('client_trace_id', m.last_request.json())
            self.assertIsNone(session.chunkSize)

    def testCreateWithoutUploadId(self):
        with requests_mock.Mocker() as m:
            m.post(f'{SERVER_URL}/v1/uploads', json={'chunk_size_bytes': 1024})

            with self.assertRaises(UploadProtocolError):
                self.client.createUploadSession('a.png', 10, 'image/png')

    def testCreateFailureStatus(self):
        with requests_mock.Mocker() as m:
            m.post(f'{SERVER_URL}/v1/uploads', status_code=401, text='bad key')

            with self.assertRaises(UnauthenticatedError) as context:
                self.client.createUploadSession('a.png', 10, 'image/png')

            self.assertEqual(context.exception.statusCode, 401)

    def testGetUploadStatus(self):
        with requests_mock.Mocker() as m:
            m.head(
                UPLOAD_URL, headers={
                    'Upload-Offset': '512',
                    'Upload-Length': '4096',
                    'Upload-Expires': 'Tue, 01 Dec 2026 00:00:00 GMT'
                }
            )

            status = self.client.getUploadStatus('up-1')

            self.assertEqual(status.offset, 512)
            self.assertEqual(status.length, 4096)
            self.assertEqual(status.expiresAt, 'Tue, 01 Dec 2026 00:00:00 GMT')
            self.assertEqual(self.client.getUploadOffset('up-1'), 512)

    def testInvalidOffsetHeaders(self):
        for headers in ({}, {'Upload-Offset': ''}, {'Upload-Offset': 'abc'}, {'Upload-Offset': '-1'}):
            with self.subTest(headers=headers):
                with requests_mock.Mocker() as m:
                    m.head(UPLOAD_URL, headers=headers)

                    with self.assertRaises(UploadProtocolError):
                        self.client.getUploadOffset('up-1')

    def testAppendChunkOnce(self):
        with requests_mock.Mocker() as m:
            m.patch(UPLOAD_URL, status_code=204, headers={'Upload-Offset': '15'})

            newOffset = self.client.appendChunkOnce('up-1', 10, b'hello')

            self.assertEqual(newOffset, 15)
            request = m.last_request
            self.assertEqual(request.headers['Content-Type'], 'application/offset+octet-stream')
            self.assertEqual(request.headers['Upload-Offset'], '10')
            self.assertEqual(request.headers['Content-Length'], '5')
            self.assertEqual(request.headers['Authorization'], f'Bearer {API_KEY}')
            self.assertEqual(request.body, b'hello')

    def testConflictReturnsServerOffset(self):
        """A 409 is resolved by re-querying the offset, without counting as a failed attempt"""
        with requests_mock.Mocker() as m:
            patchMock = m.patch(UPLOAD_URL, status_code=409)
            m.head(UPLOAD_URL, headers={'Upload-Offset': '7'})

            self.assertEqual(self.client.appendChunk('up-1', 3, b'abcd'), 7)
            self.assertEqual(patchMock.call_count, 1)
            self.sleep.assert_not_called()

    def testFatalStatusesNotRetried(self):
        cases = {
            400: BadRequestError,
            401: UnauthenticatedError,
            403: UnauthorizedError,
            404: UploadNotFoundError,
            410: UploadExpiredError,
            413: ChunkTooLargeError,
        }

        for statusCode, errorClass in cases.items():
            with self.subTest(statusCode=statusCode):
                self.sleep.reset_mock()
                with requests_mock.Mocker() as m:
                    patchMock = m.patch(UPLOAD_URL, status_code=statusCode)

                    with self.assertRaises(errorClass) as context:
                        self.client.appendChunk('up-1', 0, b'data')

                    self.assertEqual(context.exception.statusCode, statusCode)
                    self.assertEqual(patchMock.call_count, 1)
                    self.sleep.assert_not_called()

    def testTransientFailuresRetried(self):
        with requests_mock.Mocker() as m:
            patchMock = m.patch(
                UPLOAD_URL, [
                    {'status_code': 503},
                    {'exc': requests.exceptions.ConnectTimeout},
                    {'status_code': 204},  # Missing Upload-Offset
                    {'status_code': 204, 'headers': {'Upload-Offset': '4'}},
                ]
            )

            self.assertEqual(self.client.appendChunk('up-1', 0, b'data'), 4)
            self.assertEqual(patchMock.call_count, 4)
            self.assertEqual(self.sleep.call_args_list, [call(1.0), call(2.0), call(4.0)])

    def testRetriesExhausted(self):
        with requests_mock.Mocker() as m:
            patchMock = m.patch(UPLOAD_URL, status_code=500)

            with self.assertRaises(UploadAPIError) as context:
                self.client.appendChunk('up-1', 0, b'data')

            self.assertEqual(context.exception.statusCode, 500)
            self.assertEqual(patchMock.call_count, 5)
            self.assertEqual(self.sleep.call_args_list, [call(1.0), call(2.0), call(4.0), call(8.0)])

    def testRetryDelay(self):
        self.assertEqual([computeRetryDelay(attempt, 1.0, 10.0) for attempt in range(1, 7)], [1, 2, 4, 8, 10, 10])

    def testAnalyze(self):
        with requests_mock.Mocker() as m:
            m.post(
                f'{SERVER_URL}/v1/vision/analyze',
                json={
                    'analysis': 'A cat on a sofa.',
                    'media_type': 'image',
                    'extraction': {'frames': 1}
                }
            )

            result = self.client.analyze('up-1', {'question': 'What is this?'})

            self.assertEqual(m.last_request.json(), {'question': 'What is this?', 'upload_id': 'up-1'})
            self.assertEqual(result.analysis, 'A cat on a sofa.')
            self.assertEqual(result.mediaType, 'image')
            self.assertEqual(result.extraction, {'frames': 1})
            self.assertEqual(result.uploadId, 'up-1')

    def testAnalyzeWithoutText(self):
        with requests_mock.Mocker() as m:
            m.post(f'{SERVER_URL}/v1/vision/analyze', json={'media_type': 'image'})

            with self.assertRaises(UploadProtocolError):
                self.client.analyze('up-1')

    def testConfigurationChecks(self):
        with self.assertRaises(ConfigurationError):
            ResumableUploadClient(SERVER_URL, '')

        with self.assertRaises(ConfigurationError):
            ResumableUploadClient('ftp://upload.test', API_KEY)

        self.assertEqual(self.client.serverURL, SERVER_URL)

    def testAdapterReplacedOnlyWhenStallTimeoutChanges(self):
        adapter = self.client.session.adapters['http://']
        self.assertIs(self.client.session.adapters['https://'], adapter)

        with requests_mock.Mocker() as m, patch.object(adapter, 'close') as close:
            m.post(f'{SERVER_URL}/v1/uploads', json={'upload_id': 'up-1', 'chunk_size_bytes': 1048576})
            self.client.createUploadSession('a.png', 4, 'image/png')

            self.assertIs(self.client.session.adapters['http://'], adapter)
            close.assert_not_called()

            m.post(f'{SERVER_URL}/v1/uploads', json={'upload_id': 'up-2', 'chunk_size_bytes': 300 * 1048576})
            self.client.createUploadSession('b.mp4', 4, 'video/mp4')

            close.assert_called_once_with()

        replacement = self.client.session.adapters['http://']
        self.assertIsNot(replacement, adapter)
        self.assertIs(self.client.session.adapters['https://'], replacement)
        self.assertEqual(replacement.stallTimeoutMs, 300 * 1000)

    def testCredentialNeverExposed(self):
        self.assertNotIn(API_KEY, repr(self.client))

        with requests_mock.Mocker() as m:
            m.post(f'{SERVER_URL}/v1/uploads', json={'upload_id': 'up-1', 'chunk_size_bytes': 4})
            m.patch(UPLOAD_URL, status_code=409)
            m.head(UPLOAD_URL, headers={'Upload-Offset': '0'})

            with self.assertLogs('medialink.Client', level='DEBUG') as logs:
                self.client.createUploadSession('a.png', 4, 'image/png')
                self.client.appendChunk('up-1', 0, b'data')

        for line in logs.output:
            self.assertNotIn(API_KEY, line)


if __name__ == '__main__':
    unittest.main()
