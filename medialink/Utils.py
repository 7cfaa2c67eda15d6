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

import os
import socket
import sys

import bitmath

from urllib3 import PoolManager
from urllib3.connection import HTTPConnection
from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter

from medialink.Kernel import getLogger
from medialink.Settings import SettingsGetter

ONE_KB = bitmath.KiB(1).bytes
ONE_MB = bitmath.MiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

logger = getLogger(__name__)


# flush is required when stdout is a pipe (e.g. captured by a host process).
def flushPrint(text, file=None):
    try:
        print(text, file=file, flush=True)
    except UnicodeEncodeError as e:
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}")
        encoding = (file or sys.stdout).encoding or 'utf-8'
        print(text.encode(encoding, errors='replace').decode(encoding), file=file, flush=True)


def formatSize(size, decimal=None, plural=None):
    """Human readable SI size such as '512 Bytes', '8M', '1.5G' or '2.00T'"""
    if decimal is None:
        decimal = 0 if size < ONE_GB else 1 if size < ONE_TB else 2

    if plural is None:
        plural = size <= ONE_KB

    best = bitmath.Byte(size).best_prefix(system=bitmath.SI)

    # bitmath 2.x names the unprefixed unit 'B'
    if isinstance(best, bitmath.Byte):
        unit = 'Bytes' if plural and size != 1 else 'Byte'
        return f'{size:.{decimal}f} {unit}'

    return best.format(f'{{value:.{decimal}f}}{{unit}}').replace('B', '').upper()


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    """
    Tell the user what failed and what to do next, then log the traceback.

    Set RAISE_EXCEPTION=True to re-raise for debugging.
    """
    if e is None:
        logger.error(f'sendException called without an exception: {errorPrefix=}')
        return

    flushPrint(f'{errorPrefix}: {e}' if errorPrefix else f'{e}', file=sys.stderr)
    flushPrint(action or 'Please try again or try later.', file=sys.stderr)

    supportURL = SettingsGetter.getInstance().getSupportURL()
    flushPrint(f'\nIf you still get the same problem, please report it at {supportURL}.', file=sys.stderr)

    if isinstance(e, BaseException):
        logger.exception(e)
        if os.getenv('RAISE_EXCEPTION', 'False') == 'True':
            raise e


def getEnv(envVar, default):
    """Environment value converted to the type of `default`, `default` when unset or unparsable"""
    value = os.getenv(envVar)
    if value is None:
        return default
    if default is None:
        return value
    if isinstance(default, bool):
        return value == 'True'

    try:
        return type(default)(value)
    except (ValueError, TypeError):
        return default


# Lower bound of the stall timeout in seconds
DEFAULT_MIN_STALL_TIMEOUT_SECONDS = getEnv('HTTP_DEFAULT_MIN_STALL_TIMEOUT_SECONDS', 120)

# Slowest acceptable upload speed in MBps, a chunk gets chunkSize / speed seconds
DEFAULT_STALL_SPEED_THRESHOLD_MBPS = getEnv('HTTP_DEFAULT_STALL_SPEED_THRESHOLD_MBPS', 1.0)


def buildSocketOptions(stallTimeoutMs, isLinux):
    """urllib3 socket options: keepalive probes, plus TCP_USER_TIMEOUT on Linux"""
    options = list(HTTPConnection.default_socket_options)
    options.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))

    for name, value in (('TCP_KEEPIDLE', 30), ('TCP_KEEPINTVL', 10), ('TCP_KEEPCNT', 3)):
        if hasattr(socket, name):
            options.append((socket.IPPROTO_TCP, getattr(socket, name), value))

    # Unacknowledged data older than this kills the connection while a chunk is in flight
    if isLinux and hasattr(socket, 'TCP_USER_TIMEOUT'):
        options.append((socket.IPPROTO_TCP, socket.TCP_USER_TIMEOUT, stallTimeoutMs))

    return options


class StallResilientAdapter(HTTPAdapter):
    """
    requests adapter that turns dead or stalled upload connections into errors.

    urllib3 may retry idempotent methods once on connection failures. Chunk appends are
    left to the upload client, which re-checks the server offset before every retry.
    """

    @classmethod
    def calculateStallTimeoutMs(cls, chunkSize):
        """
        Stall timeout sized to the chunk: max(120s, chunkSize / speedThreshold)

        Returns:
            int: Stall timeout in milliseconds
        """
        seconds = max(DEFAULT_MIN_STALL_TIMEOUT_SECONDS, chunkSize / (DEFAULT_STALL_SPEED_THRESHOLD_MBPS * ONE_MB))
        return int(seconds * 1000)

    def __init__(self, stallTimeoutMs: int = None, chunkSize: int = None, allowedMethods=('GET', 'HEAD'), **kwargs):
        """
        Args:
            stallTimeoutMs: Explicit stall timeout in milliseconds (overrides calculation)
            chunkSize: Upload chunk size the timeout is derived from
            allowedMethods: Methods urllib3 may retry on connection failures
        """
        if stallTimeoutMs is None:
            stallTimeoutMs = self.calculateStallTimeoutMs(chunkSize or 0)
        self.stallTimeoutMs = stallTimeoutMs
        self.isLinux = SettingsGetter.getInstance().isLinux()

        kwargs['max_retries'] = Retry(
            total=1,
            connect=1,
            read=0,
            status=0, # Status handling belongs to the upload client
            backoff_factor=0.5,
            allowed_methods=frozenset(allowedMethods),
            raise_on_status=False,
        )
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **kwargs):
        kwargs['socket_options'] = buildSocketOptions(self.stallTimeoutMs, self.isLinux)
        self.poolmanager = PoolManager(num_pools=connections, maxsize=maxsize, block=block, **kwargs)
