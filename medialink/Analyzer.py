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

import math
import uuid

from dataclasses import dataclass, replace
from typing import Optional

from medialink.Client import ResumableUploadClient, AnalysisResult
from medialink.Kernel import getLogger
from medialink.Settings import SettingsGetter
from medialink.Uploader import MediaUploader, InputError

logger = getLogger(__name__)

ANALYSIS_MODES = ('auto', 'single', 'multipass')

CLIENT_TRACE_PREFIX = 'medialink'

# Server-side identifiers removed from extraction metadata at any depth
INTERNAL_FIELDS = frozenset((
    'upload_id',
    'uploadId',
    'detected_media_type',
    'analysis_mode_requested',
    'analysis_mode_used',
    'multipass',
    'model',
))


def _text(value):
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _number(value):
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return value
    return None


def _integer(value):
    number = _number(value)
    return math.floor(number) if number is not None else None


def _flag(value):
    return value if isinstance(value, bool) else None


def _compact(payload):
    return {key: value for key, value in payload.items() if value is not None}


def makeClientTraceId():
    return f'{CLIENT_TRACE_PREFIX}_{uuid.uuid4()}'


def stripInternalFields(value):
    """Copy of a JSON value without INTERNAL_FIELDS keys, at every nesting level"""
    if isinstance(value, list):
        return [stripInternalFields(item) for item in value]
    if isinstance(value, dict):
        return {key: stripInternalFields(child) for key, child in value.items() if key not in INTERNAL_FIELDS}
    return value


@dataclass
class VideoOptions:
    clipStartSeconds: Optional[float] = None
    clipDurationSeconds: Optional[float] = None
    segmentSeconds: Optional[float] = None
    maxSegments: Optional[int] = None
    maxFramesPerSegment: Optional[int] = None

    def toPayload(self) -> dict:
        clipStart = _number(self.clipStartSeconds)
        clipDuration = _number(self.clipDurationSeconds)
        return _compact({
            'clip_start_seconds': max(0, clipStart) if clipStart is not None else None,
            'clip_duration_seconds': clipDuration if clipDuration is not None and clipDuration > 0 else None,
            'segment_seconds': _number(self.segmentSeconds),
            'max_segments': _integer(self.maxSegments),
            'max_frames_per_segment': _integer(self.maxFramesPerSegment),
        })


@dataclass
class DocumentOptions:
    maxPagesTotal: Optional[int] = None
    pagesPerBatch: Optional[int] = None
    maxImagesPerBatch: Optional[int] = None
    scannedTextThresholdChars: Optional[int] = None

    def toPayload(self) -> dict:
        return _compact({
            'max_pages_total': _integer(self.maxPagesTotal),
            'pages_per_batch': _integer(self.pagesPerBatch),
            'max_images_per_batch': _integer(self.maxImagesPerBatch),
            'scanned_text_threshold_chars': _integer(self.scannedTextThresholdChars),
        })


@dataclass
class AudioOptions:
    timestamps: Optional[bool] = None
    segmentSeconds: Optional[float] = None
    maxSegments: Optional[int] = None

    def toPayload(self) -> dict:
        return _compact({
            'timestamps': _flag(self.timestamps),
            'segment_seconds': _number(self.segmentSeconds),
            'max_segments': _integer(self.maxSegments),
        })


@dataclass
class ImageSetOptions:
    maxImagesTotal: Optional[int] = None
    imagesPerBatch: Optional[int] = None
    maxDimension: Optional[int] = None

    def toPayload(self) -> dict:
        return _compact({
            'max_images_total': _integer(self.maxImagesTotal),
            'images_per_batch': _integer(self.imagesPerBatch),
            'max_dimension': _integer(self.maxDimension),
        })


@dataclass
class AnalysisOptions:
    """
    Optional tuning sent with an analysis request.

    Only fields that are set end up in the request, strings are trimmed and blank ones
    dropped, nested count fields are floored to integers and empty option groups are omitted.
    """

    context: Optional[str] = None
    question: Optional[str] = None
    language: Optional[str] = None
    maxFrames: Optional[int] = None
    transcribe: Optional[bool] = None
    transcriptionLanguage: Optional[str] = None
    analysisMode: Optional[str] = None
    video: Optional[VideoOptions] = None
    document: Optional[DocumentOptions] = None
    audio: Optional[AudioOptions] = None
    images: Optional[ImageSetOptions] = None

    def __post_init__(self):
        mode = _text(self.analysisMode)
        if mode is not None and mode not in ANALYSIS_MODES:
            raise InputError(f"analysisMode must be one of: {'|'.join(ANALYSIS_MODES)}.")

    def toPayload(self) -> dict:
        payload = _compact({
            'context': _text(self.context),
            'question': _text(self.question),
            'language': _text(self.language),
            'max_frames': _number(self.maxFrames),
            'transcribe': _flag(self.transcribe),
            'transcription_language': _text(self.transcriptionLanguage),
            'analysis_mode': _text(self.analysisMode),
        })

        groups = {'video': self.video, 'document': self.document, 'audio': self.audio, 'images': self.images}
        for key, group in groups.items():
            if group is not None:
                groupPayload = group.toPayload()
                if groupPayload:
                    payload[key] = groupPayload

        return payload


class MediaAnalyzer:
    """
    Upload media and ask the server to analyze it.

    Usage:
        analyzer = MediaAnalyzer.fromSettings()
        result = analyzer.analyze(['/tmp/a.png', '/tmp/b.png'], AnalysisOptions(question='What changed?'))
        print(result.analysis)
    """

    def __init__(self, client, uploader=None, defaultLanguage=None):
        self.client = client
        self.uploader = uploader or MediaUploader(client)
        self.defaultLanguage = _text(defaultLanguage)

    @classmethod
    def fromSettings(cls, settings=None, useProgressBar=False):
        settings = settings or SettingsGetter.getInstance()
        client = ResumableUploadClient.fromSettings(settings)
        return cls(client, MediaUploader(client, useProgressBar=useProgressBar), settings.defaultLanguage)

    def analyze(self, paths, options=None) -> AnalysisResult:
        """
        Upload `paths` (one file, or several images as a media set) and analyze the upload

        Returns:
            AnalysisResult: Analysis text, media type and extraction without internal fields
        """
        options = options or AnalysisOptions()
        clientTraceId = makeClientTraceId()

        uploadId = self.uploader.upload(paths, clientTraceId)
        logger.debug(f"Upload {uploadId} finished, traceId={clientTraceId}")

        if _text(options.language) is None and self.defaultLanguage:
            options = replace(options, language=self.defaultLanguage)

        result = self.client.analyze(uploadId, options)
        result.extraction = stripInternalFields(result.extraction)
        return result
