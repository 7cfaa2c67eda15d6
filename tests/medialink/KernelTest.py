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

import json
import os
import shutil
import tempfile
import unittest

from unittest.mock import patch

from medialink.Kernel import StorageLocator, SecretGetter, Singleton


class StorageLocatorTest(unittest.TestCase):
    """
    Test case for the lookup order of configuration files.
    """

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tempDir)
        self.locator = StorageLocator.getInstance()

    def testIsSingleton(self):
        self.assertIs(StorageLocator.getInstance(), self.locator)
        self.assertIs(StorageLocator(), self.locator)

    def testEnvironmentLocationFirst(self):
        path = os.path.join(self.tempDir, '.env')
        with open(path, 'w') as f:
            f.write('A=1\n')

        with patch.dict(os.environ, {'MEDIALINK_STORAGE_LOCATION': self.tempDir}):
            self.assertEqual(self.locator.findStorage('.env'), path)

    def testEnvironmentLocationForMissingFile(self):
        """A missing file under an override location still resolves inside it, ready to be created"""
        filename = 'medialink-missing-config.json'

        with patch.dict(os.environ, {'MEDIALINK_STORAGE_LOCATION': self.tempDir}):
            self.assertEqual(self.locator.findStorage(filename), os.path.join(self.tempDir, filename))

    def testInvalidEnvironmentLocationIgnored(self):
        filename = 'medialink-missing-config.json'
        missingDir = os.path.join(self.tempDir, 'missing')

        with patch.dict(os.environ, {'MEDIALINK_STORAGE_LOCATION': missingDir}):
            result = self.locator.findStorage(filename)

        self.assertFalse(result.startswith(missingDir))
        self.assertTrue(result.endswith(filename))


class SecretGetterTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tempDir)

        self.secretPath = os.path.join(self.tempDir, '.secret')
        with open(self.secretPath, 'w', encoding='utf-8') as f:
            json.dump({'MEDIALINK_TEST_SECRET': 'from-file'}, f)

        self.secrets = SecretGetter.getInstance()
        self.secrets.clear()
        self.addCleanup(self.secrets.clear)

    def testEnvironmentWins(self):
        with patch.dict(os.environ, {'MEDIALINK_TEST_SECRET': 'from-env'}):
            with patch.object(self.secrets, 'getPath', return_value=self.secretPath):
                self.assertEqual(self.secrets.get('MEDIALINK_TEST_SECRET'), 'from-env')

    def testSecretFile(self):
        with patch.object(self.secrets, 'getPath', return_value=self.secretPath):
            self.assertEqual(self.secrets.get('MEDIALINK_TEST_SECRET'), 'from-file')
            self.assertIsNone(self.secrets.get('MEDIALINK_TEST_UNKNOWN'))

    def testBrokenSecretFile(self):
        with open(self.secretPath, 'w') as f:
            f.write('{not json')

        with patch.object(self.secrets, 'getPath', return_value=self.secretPath):
            with self.assertLogs('medialink.Kernel', level='WARNING'):
                self.assertIsNone(self.secrets.get('MEDIALINK_TEST_SECRET'))

    def testClearRereadsFile(self):
        with patch.object(self.secrets, 'getPath', return_value=self.secretPath):
            self.assertEqual(self.secrets.get('MEDIALINK_TEST_SECRET'), 'from-file')

            with open(self.secretPath, 'w', encoding='utf-8') as f:
                json.dump({'MEDIALINK_TEST_SECRET': 'rotated'}, f)

            self.assertEqual(self.secrets.get('MEDIALINK_TEST_SECRET'), 'from-file')
            self.secrets.clear()
            self.assertEqual(self.secrets.get('MEDIALINK_TEST_SECRET'), 'rotated')


class SingletonTest(unittest.TestCase):

    def testInitializeRunsOnce(self):

        class Counter(Singleton):

            def initialize(self, start=0):
                self.value = start

        self.addCleanup(Singleton._instances.pop, Counter, None)

        first = Counter(5)
        second = Counter(10)

        self.assertIs(first, second)
        self.assertEqual(second.value, 5)


if __name__ == '__main__':
    unittest.main()
