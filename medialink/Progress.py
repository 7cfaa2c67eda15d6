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

import time

from tqdm import tqdm

from medialink.Kernel import getLogger
from medialink.Utils import formatSize, ONE_MB

logger = getLogger(__name__)


class BitmathTqdm(tqdm):
    """tqdm bar with sizes and speed formatted by formatSize."""

    def __init__(self, *args, sizeFormatter=None, unit='B', unitScale=False, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize

        if 'bar_format' not in kwargs:
            kwargs['bar_format'] = (
                '{desc}: {percentage:3.0f}%|{bar}| '
                '{n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]'
            )

        super().__init__(*args, unit=unit, unit_scale=unitScale, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        d = super().format_dict

        d['rate_fmt'] = self._formatSpeed(d.get('rate', 0) or 0)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'

        return d


class Progress:
    """
    Upload progress as a tqdm bar or as periodic log lines.

    Callers report the absolute committed offset, not an increment, so a resumed upload
    starts at its resume offset and a resync simply reports the server's offset.
    """

    def __init__(
        self,
        totalSize,
        initial=0,
        description='Uploading',
        sizeFormatter=None,
        loggerCallback=None,
        logInterval=2.0,
        useBar=False,
    ):
        self.totalSize = totalSize
        self.description = description
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback or logger.info
        self.logInterval = logInterval

        self.offset = initial
        self.lastLogTime = time.monotonic()
        self.lastLogOffset = initial

        self.pbar = None
        if useBar:
            self.pbar = BitmathTqdm(
                total=totalSize or None,
                initial=initial,
                desc=description,
                sizeFormatter=self.sizeFormatter,
                leave=True,
                ncols=100,
            )

    def __call__(self, offset, total=None):
        self.update(offset)

    def update(self, offset, forceLog=False):
        if self.pbar is not None:
            self._moveBar(offset)
            return

        self.offset = offset
        now = time.monotonic()
        if forceLog or self._shouldLog(now):
            self._logProgress(now)

    def _moveBar(self, offset):
        try:
            if offset >= self.offset:
                self.pbar.update(offset - self.offset)
            else:
                # Server offset moved back after a resync
                self.pbar.n = offset
                self.pbar.refresh()
            self.offset = offset

            if self.totalSize > 0 and offset >= self.totalSize:
                self.finishBar()
        except (ValueError, AttributeError) as e:
            logger.debug(f"Progress bar error, falling back to log lines: {e}")
            self.pbar = None

    def _shouldLog(self, now):
        if self.offset >= self.totalSize or self.offset % (5 * ONE_MB) == 0:
            return True
        return now - self.lastLogTime >= self.logInterval

    def _logProgress(self, now):
        elapsed = now - self.lastLogTime
        sent = self.offset - self.lastLogOffset
        speed = int(sent / elapsed) if elapsed > 0 and sent > 0 else 0

        self.loggerCallback(
            f"{self.description}: {self.sizeFormatter(self.offset)}/{self.sizeFormatter(self.totalSize)} "
            f"({self.getPercentage():.2f}%), {self.sizeFormatter(speed)}/sec"
        )

        self.lastLogTime = now
        self.lastLogOffset = self.offset

    def getPercentage(self):
        return self.offset * 100.0 / self.totalSize if self.totalSize > 0 else 0

    def finishBar(self, complete=True):
        """
        Close the bar if one is shown

        Args:
            complete: Fill the bar to 100% before closing, otherwise close it at the current offset
        """
        if self.pbar is None:
            return

        pbar, self.pbar = self.pbar, None
        try:
            if complete and pbar.total and pbar.n < pbar.total:
                pbar.update(pbar.total - pbar.n)
            pbar.close()
        except (ValueError, AttributeError) as e:
            logger.debug(f"Exception during progress bar cleanup: {e}")

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finishBar(complete=excType is None)
