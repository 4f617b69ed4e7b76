"""
Keyword-triggered capture.

Each session owns one ``CaptureState``. Transcribed chunks are fed in one at
a time; the state decides whether the chunk starts a recording, is buffered,
or ends the recording and hands the buffered audio back to the caller.
"""

import logging

import config
from keywords import contains_keyword

logger = logging.getLogger(__name__)

IDLE = "idle"
RECORDING = "recording"

# Outcomes of feeding a chunk / manual signal
NONE = "none"          # idle, nothing matched
STARTED = "started"    # idle -> recording
APPENDED = "appended"  # chunk buffered while recording
STOPPED = "stopped"    # recording -> idle, chunks handed off
EMPTY = "empty"        # stop requested but nothing was buffered
IGNORED = "ignored"    # manual start while already recording


class CaptureEvent:
    def __init__(self, kind, keyword=None, chunks=None, mimetype=None, manual=False):
        self.kind = kind
        self.keyword = keyword
        self.chunks = chunks or []
        self.mimetype = mimetype
        self.manual = manual

    def __repr__(self):
        return f"CaptureEvent({self.kind!r}, chunks={len(self.chunks)}, manual={self.manual})"


class CaptureState:
    def __init__(self, start_keyword=None, end_keyword=None, language=None):
        self.is_recording = False
        self.chunks = []
        self.mimetype = None
        self.start_keyword = config.DEFAULT_START_KEYWORD if start_keyword is None else start_keyword
        self.end_keyword = config.DEFAULT_END_KEYWORD if end_keyword is None else end_keyword
        self.language = language or config.DEFAULT_LANGUAGE

    @property
    def state(self):
        return RECORDING if self.is_recording else IDLE

    def configure(self, start_keyword=None, end_keyword=None, language=None):
        """Update whichever settings were supplied; blank values are ignored."""
        if start_keyword:
            self.start_keyword = str(start_keyword).strip()
        if end_keyword:
            self.end_keyword = str(end_keyword).strip()
        if language:
            self.language = str(language).strip()

    def feed(self, text, chunk, mimetype=None):
        """Advance the state machine with one transcribed chunk."""
        if not self.is_recording:
            if contains_keyword(text, self.start_keyword):
                self._start(mimetype)
                # The start chunk is kept: it carries the container header and
                # the start utterance is cut from the transcript later.
                self._append(chunk, mimetype)
                return CaptureEvent(STARTED, keyword=self.start_keyword)
            if contains_keyword(text, self.end_keyword):
                # End keyword without a recording: nothing to process
                return CaptureEvent(EMPTY, keyword=self.end_keyword)
            return CaptureEvent(NONE)

        if contains_keyword(text, self.end_keyword):
            return self._stop(keyword=self.end_keyword)

        self._append(chunk, mimetype)
        return CaptureEvent(APPENDED)

    def manual_start(self):
        if self.is_recording:
            return CaptureEvent(IGNORED, manual=True)
        self._start(None)
        return CaptureEvent(STARTED, manual=True)

    def manual_stop(self):
        return self._stop(manual=True)

    def take_audio(self):
        """Buffered chunks and their mimetype, clearing the buffer."""
        chunks, mimetype = self.chunks, self.mimetype
        self.chunks = []
        return chunks, mimetype

    def _start(self, mimetype):
        self.is_recording = True
        self.chunks = []
        self.mimetype = mimetype
        logger.info("Capture started (start=%r, end=%r)", self.start_keyword, self.end_keyword)

    def _append(self, chunk, mimetype=None):
        if chunk:
            if self.mimetype is None:
                self.mimetype = mimetype
            self.chunks.append(chunk)

    def _stop(self, keyword=None, manual=False):
        self.is_recording = False
        chunks, mimetype = self.take_audio()
        if not chunks:
            logger.info("Capture stopped with no audio buffered")
            return CaptureEvent(EMPTY, keyword=keyword, manual=manual)
        logger.info("Capture stopped with %d chunk(s)", len(chunks))
        return CaptureEvent(STOPPED, keyword=keyword, chunks=chunks, mimetype=mimetype, manual=manual)
