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

import argparse
import json
import os
import logging
import logging.config
import platform
import sys

from medialink.Analyzer import (
    ANALYSIS_MODES, AnalysisOptions, VideoOptions, DocumentOptions, AudioOptions, ImageSetOptions, MediaAnalyzer,
    makeClientTraceId
)
from medialink.Client import (
    ResumableUploadClient, UnauthenticatedError, UnauthorizedError, UploadNotFoundError, UploadExpiredError,
    ChunkTooLargeError, UploadAPIError
)
from medialink.Kernel import PUBLIC_VERSION, LOG_LEVEL_MAPPING, getLogger, configureGlobalLogLevel, StorageLocator
from medialink.Settings import API_KEY_ENV, SERVER_URL_ENV, ConfigurationError, SettingsGetter
from medialink.Tar import InvalidTarEntryError, SourceChangedError
from medialink.Uploader import MediaUploader, InputError, NotAFileError, UploadStalledError, UploadIncompleteError
from medialink.Utils import flushPrint, getEnv, sendException

logger = getLogger(__name__)


def loadEnvFile():
    """
    Load environment variables from the .env file found by StorageLocator.
    Variables already defined in os.environ are left untouched.
    """
    envFilePath = StorageLocator.getInstance().findStorage('.env')

    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    logger.warning(f'.env line {lineNum}: Invalid format (missing =)')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    logger.warning(f'.env line {lineNum}: Empty key')
                    continue

                if (value.startswith('"') and value.endswith('"')) or \
                   (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]

                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')
    except (OSError, UnicodeDecodeError) as e:
        logger.error(f'Unexpected error loading .env file {envFilePath}: {e}')
        return loadedCount

    logger.info(f'Loaded {loadedCount} environment variables from {envFilePath}')
    return loadedCount


def configureLogging(logLevel):
    """
    Configure logging from --log-level or MEDIALINK_LOGGING_LEVEL

    Both accept a level name (DEBUG, INFO, WARNING, ERROR) or the path of a JSON
    logging.config.dictConfig file.
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('MEDIALINK_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                logging.config.dictConfig(json.load(configFile))
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel
        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}", file=sys.stderr)
            flushPrint("Falling back to default logging level configuration", file=sys.stderr)

    level = LOG_LEVEL_MAPPING.get(logLevel.upper())
    if level is not None:
        configureGlobalLogLevel(level)
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()
    return logLevel


def showVersion():
    flushPrint(f"MediaLink v{PUBLIC_VERSION}")
    flushPrint("")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")

    settingsGetter = SettingsGetter.getInstance()
    flushPrint(f"Server: {settingsGetter.serverURL}")
    flushPrint(f"Support: {settingsGetter.getSupportURL()}")


def _positiveInt(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an integer, got '{value}'")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got {number}")
    return number


def configureCLIParser():
    """
    Build the command-line parser

    Returns:
        tuple: (parser, globalsParent)
    """

    def validateLogLevel(logLevel):
        if os.path.exists(logLevel):
            return logLevel

        validLevels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if logLevel.upper() not in validLevels:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}"
            )
        return logLevel.upper()

    globalsParent = argparse.ArgumentParser(add_help=False, exit_on_error=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )
    globalsParent.add_argument(
        "--server-url", help=f"Upload server base URL (default: ${SERVER_URL_ENV})", metavar="URL", dest="serverURL"
    )
    globalsParent.add_argument(
        "--timeout", type=float, help="Per-request timeout in seconds", metavar="SECONDS", dest="timeout"
    )

    parser = argparse.ArgumentParser(
        prog='medialink',
        description="MediaLink uploads media over a resumable protocol and asks the server to analyze it.",
        parents=[globalsParent],
        exit_on_error=False,
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    def _addUploadArguments(commandParser):
        commandParser.add_argument(
            "paths", nargs='+', metavar="PATH", help="One file, or several images to send as one image set"
        )
        commandParser.add_argument(
            "--chunk-size",
            type=_positiveInt,
            help="Upper bound for chunk sizes in bytes (the server hint wins when smaller)",
            metavar="BYTES",
            dest="chunkSize"
        )
        commandParser.add_argument(
            "--progress-bar", action="store_true", help="Show a progress bar instead of log lines", dest="progressBar"
        )
        commandParser.add_argument("--json", action="store_true", help="Print the result as JSON", dest="json")

    uploadSubparser = subparsers.add_parser(
        'upload', help='Upload files and print the upload id', parents=[globalsParent], exit_on_error=False
    )
    _addUploadArguments(uploadSubparser)

    analyzeSubparser = subparsers.add_parser(
        'analyze', help='Upload files and print the analysis', parents=[globalsParent], exit_on_error=False
    )
    _addUploadArguments(analyzeSubparser)
    analyzeSubparser.add_argument("--context", help="Analysis hint (ui, diagram, chart, error, code, meeting, ...)")
    analyzeSubparser.add_argument("--question", help="Question to answer about the media")
    analyzeSubparser.add_argument("--language", help="Response language (default: $MEDIALINK_DEFAULT_LANGUAGE)")
    analyzeSubparser.add_argument("--max-frames", type=int, dest="maxFrames", metavar="N")
    analyzeSubparser.add_argument(
        "--transcribe", action=argparse.BooleanOptionalAction, default=None, help="Transcribe audio tracks"
    )
    analyzeSubparser.add_argument("--transcription-language", dest="transcriptionLanguage", metavar="LANG")
    analyzeSubparser.add_argument("--analysis-mode", choices=ANALYSIS_MODES, dest="analysisMode")

    videoGroup = analyzeSubparser.add_argument_group('video')
    videoGroup.add_argument("--clip-start", type=float, dest="clipStartSeconds", metavar="SECONDS")
    videoGroup.add_argument("--clip-duration", type=float, dest="clipDurationSeconds", metavar="SECONDS")
    videoGroup.add_argument("--segment-seconds", type=float, dest="segmentSeconds", metavar="SECONDS")
    videoGroup.add_argument("--max-segments", type=int, dest="maxSegments", metavar="N")
    videoGroup.add_argument("--max-frames-per-segment", type=int, dest="maxFramesPerSegment", metavar="N")

    documentGroup = analyzeSubparser.add_argument_group('document')
    documentGroup.add_argument("--max-pages", type=int, dest="maxPagesTotal", metavar="N")
    documentGroup.add_argument("--pages-per-batch", type=int, dest="pagesPerBatch", metavar="N")
    documentGroup.add_argument("--max-images-per-batch", type=int, dest="maxImagesPerBatch", metavar="N")
    documentGroup.add_argument("--scanned-text-threshold", type=int, dest="scannedTextThresholdChars", metavar="CHARS")

    audioGroup = analyzeSubparser.add_argument_group('audio')
    audioGroup.add_argument(
        "--audio-timestamps", action=argparse.BooleanOptionalAction, default=None, dest="audioTimestamps"
    )
    audioGroup.add_argument("--audio-segment-seconds", type=float, dest="audioSegmentSeconds", metavar="SECONDS")
    audioGroup.add_argument("--audio-max-segments", type=int, dest="audioMaxSegments", metavar="N")

    imagesGroup = analyzeSubparser.add_argument_group('image set')
    imagesGroup.add_argument("--max-images", type=int, dest="maxImagesTotal", metavar="N")
    imagesGroup.add_argument("--images-per-batch", type=int, dest="imagesPerBatch", metavar="N")
    imagesGroup.add_argument("--max-dimension", type=int, dest="maxDimension", metavar="PIXELS")

    return parser, globalsParent


def buildAnalysisOptions(args) -> AnalysisOptions:
    return AnalysisOptions(
        context=args.context,
        question=args.question,
        language=args.language,
        maxFrames=args.maxFrames,
        transcribe=args.transcribe,
        transcriptionLanguage=args.transcriptionLanguage,
        analysisMode=args.analysisMode,
        video=VideoOptions(
            clipStartSeconds=args.clipStartSeconds,
            clipDurationSeconds=args.clipDurationSeconds,
            segmentSeconds=args.segmentSeconds,
            maxSegments=args.maxSegments,
            maxFramesPerSegment=args.maxFramesPerSegment,
        ),
        document=DocumentOptions(
            maxPagesTotal=args.maxPagesTotal,
            pagesPerBatch=args.pagesPerBatch,
            maxImagesPerBatch=args.maxImagesPerBatch,
            scannedTextThresholdChars=args.scannedTextThresholdChars,
        ),
        audio=AudioOptions(
            timestamps=args.audioTimestamps,
            segmentSeconds=args.audioSegmentSeconds,
            maxSegments=args.audioMaxSegments,
        ),
        images=ImageSetOptions(
            maxImagesTotal=args.maxImagesTotal,
            imagesPerBatch=args.imagesPerBatch,
            maxDimension=args.maxDimension,
        ),
    )


def runCommand(function, args):
    """
    Run a command and map failures to user messages

    Returns:
        int: Exit code
    """
    try:
        return function(args)
    except KeyboardInterrupt:
        raise
    except ConfigurationError as e:
        sendException(
            logger, e, action=f'Set {SERVER_URL_ENV} and {API_KEY_ENV} (environment, .env or .secret).',
            errorPrefix='Configuration error'
        )
    except (InputError, InvalidTarEntryError, FileNotFoundError, NotAFileError) as e:
        sendException(logger, e, action='Check the given paths and try again.', errorPrefix='Invalid input')
    except (UnauthenticatedError, UnauthorizedError) as e:
        sendException(logger, e, action=f'Check {API_KEY_ENV}.', errorPrefix='Access denied')
    except (UploadNotFoundError, UploadExpiredError) as e:
        sendException(logger, e, action='Start the upload again.', errorPrefix='Upload session is gone')
    except ChunkTooLargeError as e:
        sendException(logger, e, action='Use a smaller --chunk-size.', errorPrefix='Server rejected the chunk size')
    except SourceChangedError as e:
        sendException(
            logger, e, action='Make sure files are not modified while uploading, then try again.',
            errorPrefix='A file changed during upload'
        )
    except (UploadStalledError, UploadIncompleteError) as e:
        sendException(logger, e, errorPrefix='Upload did not complete')
    except UploadAPIError as e:
        sendException(logger, e, errorPrefix='Server temporarily cannot process this request')
    return 1


def processUpload(args):
    client = ResumableUploadClient.fromSettings()
    try:
        uploader = MediaUploader(client, chunkSize=args.chunkSize, useProgressBar=args.progressBar)
        uploadId = uploader.upload(args.paths, makeClientTraceId())
    finally:
        client.close()

    if args.json:
        flushPrint(json.dumps({'upload_id': uploadId}))
    else:
        flushPrint(uploadId)
    return 0


def processAnalyze(args):
    options = buildAnalysisOptions(args)

    analyzer = MediaAnalyzer.fromSettings(useProgressBar=args.progressBar)
    analyzer.uploader.chunkSize = args.chunkSize
    try:
        result = analyzer.analyze(args.paths, options)
    finally:
        analyzer.client.close()

    if args.json:
        flushPrint(json.dumps(result.toDict(), ensure_ascii=False, indent=2))
    else:
        flushPrint(result.analysis)
    return 0


def runCLIMain(argv=None):
    """Parse arguments in two phases (globals first) and dispatch the command"""
    parser, globalsParent = configureCLIParser()

    argv = sys.argv[1:] if argv is None else list(argv)

    if not argv:
        parser.print_help()
        return 0

    try:
        globalArgs, rest = globalsParent.parse_known_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    configureLogging(globalArgs.logLevel)

    if globalArgs.version:
        showVersion()
        return 0

    if not rest:
        parser.print_help()
        return 0

    try:
        args = parser.parse_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    if args.command is None:
        parser.print_help()
        return 0

    SettingsGetter.getInstance().override(serverURL=globalArgs.serverURL, timeout=globalArgs.timeout)

    if args.command == 'upload':
        return runCommand(processUpload, args)
    return runCommand(processAnalyze, args)
