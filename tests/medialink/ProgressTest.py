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

import io
import unittest

from unittest.mock import patch

from medialink.Progress import Progress
from medialink.Utils import ONE_MB


class ProgressTest(unittest.TestCase):

    def testLogLines(self):
        lines = []
        progress = Progress(10 * ONE_MB, description='clip.mp4', loggerCallback=lines.append, logInterval=3600)

        progress(ONE_MB, 10 * ONE_MB)
        self.assertEqual(lines, [])

        progress(5 * ONE_MB, 10 * ONE_MB)
        self.assertEqual(len(lines), 1)
        self.assertIn('(50.00%)', lines[0])

        progress(10 * ONE_MB, 10 * ONE_MB)
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith('clip.mp4: '))
        self.assertIn('(100.00%)', lines[1])

    def testResumedOffset(self):
        progress = Progress(400, initial=100, loggerCallback=lambda line: None)
        self.assertEqual(progress.getPercentage(), 25)

        progress.update(300)
        self.assertEqual(progress.getPercentage(), 75)
        self.assertEqual(Progress(0).getPercentage(), 0)

    def testBarFollowsServerOffset(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            progress = Progress(1000, initial=200, useBar=True)
            self.assertEqual(progress.pbar.n, 200)

            progress(600)
            self.assertEqual(progress.pbar.n, 600)

            # Resync back to an earlier server offset
            progress(450)
            self.assertEqual(progress.pbar.n, 450)

            progress.finishBar(complete=False)
            self.assertIsNone(progress.pbar)

    def testBarClosesAtTotal(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with Progress(1000, useBar=True) as progress:
                progress(1000)
                self.assertIsNone(progress.pbar)


if __name__ == '__main__':
    unittest.main()
