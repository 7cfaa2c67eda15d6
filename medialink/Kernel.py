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
import json
import logging
import platform
import threading

# Error reporting is disabled unless a SENTRY_DSN is configured explicitly.
import sentry_sdk

from pathlib import Path

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.0.0'

APP_NAME = 'medialink'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter(LOG_FORMAT)

    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('MEDIALINK_LOGGING_LEVEL'):
    _envLogLevel = LOG_LEVEL_MAPPING.get(os.getenv('MEDIALINK_LOGGING_LEVEL').upper())
    if _envLogLevel is not None:
        configureGlobalLogLevel(_envLogLevel)


def _initSentry():
    """Initialize Sentry once if a DSN is available, returns True when this call initialized it."""
    if sentry_sdk.get_client().is_active():
        return False

    sentryDsn = SecretGetter.getInstance().get('SENTRY_DSN')
    if not sentryDsn:
        return False

    # Suppress "sentry is attempting to send pending events..." on exit
    sentryAtexit.default_callback = lambda pending, timeout: None

    sentry_sdk.init(
        dsn=sentryDsn,
        default_integrations=False,
        integrations=[
            LoggingIntegration(),
            sentryAtexit.AtexitIntegration(),
        ],
    )
    return True


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration.

    Sentry itself is only initialized when SENTRY_DSN can be found through SecretGetter,
    otherwise the attached handler is inert.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryInitialized = _initSentry()

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            syslog = SentryHandler()
            syslog.setFormatter(logging.Formatter('%(asctime)s version[%(version)s] : %(message)s'))
            logger.addHandler(syslog)

        adapter = logging.LoggerAdapter(logger, {'version': version or 'unknown'})
        if sentryInitialized:
            adapter.debug('Sentry initialized')
        return adapter

    except Exception as e:
        fallbackLogger = logging.getLogger(name)
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")
        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class.
    Subclasses override initialize() which runs once for the lifetime of the instance.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class StorageLocator(Singleton):
    """
    Where .env and .secret live.

    Search order: $MEDIALINK_STORAGE_LOCATION (when it is a directory), the current
    directory, ~/.medialink, then the platform config directory.
    """

    STORAGE_LOCATION_ENV = 'MEDIALINK_STORAGE_LOCATION'

    def initialize(self, appName=APP_NAME):
        self.appName = appName

    def getHomeDir(self):
        return os.path.join(os.path.expanduser('~'), f'.{self.appName}')

    def getPlatformDir(self):
        system = platform.system()
        if system == 'Windows':
            return os.path.join(os.getenv('APPDATA', os.path.expanduser('~')), self.appName)
        if system == 'Darwin':
            return os.path.join(os.path.expanduser('~'), 'Library', 'Application Support', self.appName)
        return os.path.join(os.path.expanduser('~'), '.config', self.appName)

    def _getOverrideDir(self):
        override = os.getenv(self.STORAGE_LOCATION_ENV)
        return override if override and os.path.isdir(override) else None

    def getSearchDirs(self):
        override = self._getOverrideDir()
        dirs = [os.getcwd(), self.getHomeDir(), self.getPlatformDir()]
        return [override] + dirs if override else dirs

    def findStorage(self, filename):
        """
        Locate `filename` in the search directories

        Returns:
            str: First existing path, otherwise where the file belongs (override dir, else ~/.medialink)
        """
        for directory in self.getSearchDirs():
            path = os.path.join(directory, filename)
            if os.path.exists(path):
                return path

        return os.path.join(self._getOverrideDir() or self.getHomeDir(), filename)


class SecretGetter(Singleton):
    """
    Secret lookup: the environment first, then the JSON object stored in the .secret file.
    Values found are cached until clear().
    """

    SECRET_FILE_NAME = '.secret'

    def initialize(self, secretFileName=SECRET_FILE_NAME):
        self.secretFileName = secretFileName
        self.clear()

    def clear(self):
        """Forget cached values, the secret file is read again on next lookup"""
        self._cache = {}
        self._fileSecrets = None

    def getPath(self):
        return StorageLocator.getInstance().findStorage(self.secretFileName)

    def _readSecretFile(self):
        if self._fileSecrets is not None:
            return self._fileSecrets

        self._fileSecrets = {}
        path = self.getPath()
        if not os.path.exists(path):
            return self._fileSecrets

        # getLogger() would recurse into Sentry setup, which itself reads secrets
        logger = logging.getLogger(__name__)
        try:
            data = json.loads(Path(path).read_text(encoding='utf-8'))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable secret file {path}: {e}")
            return self._fileSecrets

        if isinstance(data, dict):
            self._fileSecrets = data
            logger.debug(f"Secret file {path} loaded ({len(data)} keys)")
        else:
            logger.warning(f"Ignoring secret file {path}: expected a JSON object")
        return self._fileSecrets

    def get(self, key: str):
        """
        Returns:
            str or None: Value from the environment or the secret file
        """
        if key not in self._cache:
            value = os.getenv(key) or self._readSecretFile().get(key)
            if not value:
                return None
            self._cache[key] = value
        return self._cache[key]
