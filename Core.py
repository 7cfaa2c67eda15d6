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

import platform
import sys
import os
import signal

import requests
import certifi

from medialink.CLI import runCLIMain, loadEnvFile
from medialink.Kernel import getLogger
from medialink.Settings import SettingsGetter
from medialink.Utils import flushPrint, sendException

logger = getLogger(__name__)


def setupGracefulShutdown():
    """Second Ctrl+C exits immediately, the first one unwinds through KeyboardInterrupt"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            os._exit(0)
        else:
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():
    # .env must be loaded before settings read the environment
    loadEnvFile()

    if platform.system().lower() != 'windows':
        os.environ["SSL_CERT_FILE"] = certifi.where()

    return SettingsGetter(platform=platform.system())


def main():
    setupSettings()
    setupGracefulShutdown()

    try:
        return runCLIMain()
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return 0


def run():
    try:
        exitCode = main()
        sys.exit(exitCode or 0)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        sys.exit(0)
    except (requests.exceptions.ConnectionError, ConnectionError) as e:
        sendException(logger, e, errorPrefix='Failed to connect server')
        sys.exit(1)
    except requests.exceptions.JSONDecodeError as e:
        sendException(logger, e, errorPrefix='Server return error')
        sys.exit(1)
    except PermissionError as e:
        sendException(logger, e, action='Check file permissions and try again.', errorPrefix='Permission denied')
        sys.exit(1)
    except Exception as e:
        sendException(logger, e)
        sys.exit(1)


if __name__ == '__main__':
    run()
