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

from urllib.parse import urlparse

from medialink.Kernel import Singleton, SecretGetter, getLogger

SERVER_URL_ENV = 'MEDIALINK_SERVER_URL'
API_KEY_ENV = 'MEDIALINK_API_KEY'
TIMEOUT_ENV = 'MEDIALINK_TIMEOUT_SECONDS'
DEFAULT_LANGUAGE_ENV = 'MEDIALINK_DEFAULT_LANGUAGE'

DEFAULT_SERVER_URL = 'http://127.0.0.1:8787'

# Uploads are chunked, the timeout applies per request.
DEFAULT_TIMEOUT_SECONDS = 30 * 60

SUPPORT_URL = 'https://github.com/medialink/medialink/issues'

logger = getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when required settings are missing or malformed"""
    pass


def validateServerURL(value, name=SERVER_URL_ENV):
    """Return the URL without trailing slashes, it must be an absolute http(s) URL"""
    url = (value or '').strip()
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigurationError(f'{name} must be an http(s) URL, got: {url!r}')
    return url.rstrip('/')


def _parseTimeout(raw):
    try:
        timeout = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_SECONDS
    return timeout if timeout > 0 else DEFAULT_TIMEOUT_SECONDS


# Singleton
class SettingsGetter(Singleton):

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            raise RuntimeError('Get SettingsGetter before initialized it.')
        return cls._instances[cls]

    def initialize(self, serverURL=None, apiKey=None, timeout=None, defaultLanguage=None, platform=None):
        """
        Initialize settings, unspecified values are read from the environment.

        Args:
            serverURL: Upload server base URL
            apiKey: Bearer credential, falls back to SecretGetter (environment or .secret file)
            timeout: Per-request timeout in seconds
            defaultLanguage: Response language used when a request does not set one
            platform: platform.system() value
        """
        self._serverURL = (serverURL or os.getenv(SERVER_URL_ENV) or DEFAULT_SERVER_URL).strip()
        self._apiKey = apiKey
        self._timeout = _parseTimeout(timeout if timeout is not None else os.getenv(TIMEOUT_ENV))
        self._defaultLanguage = (defaultLanguage or os.getenv(DEFAULT_LANGUAGE_ENV) or '').strip() or None
        self._platform = platform

    def override(self, serverURL=None, timeout=None):
        """Apply command-line values on top of the environment ones"""
        if serverURL:
            self._serverURL = serverURL.strip()
        if timeout is not None:
            self._timeout = _parseTimeout(timeout)

    @property
    def serverURL(self):
        return self._serverURL

    @property
    def apiKey(self):
        if self._apiKey is None:
            self._apiKey = (SecretGetter.getInstance().get(API_KEY_ENV) or '').strip()
        return self._apiKey

    @property
    def timeout(self):
        return self._timeout

    @property
    def defaultLanguage(self):
        return self._defaultLanguage

    def isWindows(self):
        return self._platform == "Windows"

    def isLinux(self):
        return self._platform == "Linux"

    def isDarwin(self):
        return self._platform == "Darwin"

    def getConnectionSettings(self):
        """
        Validated (serverURL, apiKey, timeout) tuple for building an upload client.

        Raises:
            ConfigurationError: If the URL is malformed or no API key is configured
        """
        serverURL = validateServerURL(self.serverURL)
        apiKey = self.apiKey
        if not apiKey:
            raise ConfigurationError(f'{API_KEY_ENV} is required.')
        return serverURL, apiKey, self.timeout

    def getSupportURL(self):
        return SUPPORT_URL
