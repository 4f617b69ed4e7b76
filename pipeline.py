"""
Turns a finished recording into a summary and topic.

Steps: diarized transcription -> primary speaker -> keyword stripping ->
summarize (through English when the session language is not English).
External failures degrade to best-effort output instead of raising.
"""

import logging
from collections import Counter

import config
import speech_services
from audio_chunks import combine_chunks
from keywords import fallback_topic, strip_keyword_boundaries

logger = logging.getLogger(__name__)


class PipelineResult(dict):
    """Plain dict so it can be emitted and returned as JSON unchanged."""

    @property
    def ok(self):
        return not self.get("error")


def primary_speaker(words):
    """
    Speaker label with the most words and that speaker's text.
    Returns ``(None, "")`` when no word carries a speaker label.
    """
    counts = Counter(w.get("speaker") for w in words if w.get("speaker") is not None)
    if not counts:
        return None, ""
    speaker, _ = counts.most_common(1)[0]
    text = " ".join(w["word"] for w in words if w.get("speaker") == speaker and w.get("word"))
    return speaker, text.strip()


def summarize(text, language=None):
    """
    Summary and topic for transcript text in ``language``.

    Non-English text is translated to English, summarized, and the summary
    and topic translated back. Never raises; ``fallback`` marks output that
    did not come from the summarizer.
    """
    language = language or config.DEFAULT_LANGUAGE
    english = speech_services.is_english(language)

    source_text = text
    if not english:
        source_text, provider = speech_services.translate_text(text, "en", language)
        if provider is None:
            logger.warning("Could not translate transcript to English; summarizing original text")

    try:
        result = speech_services.summarize_text(source_text)
        summary, topic = result["summary"], result["topic"]
    except speech_services.ServiceError as e:
        logger.warning("Summarization failed, using transcript as summary: %s", e)
        return {
            "summary": text,
            "topic": fallback_topic(text, config.TOPIC_FALLBACK_WORDS),
            "fallback": True,
            "translated": False,
        }

    translated = False
    if not english:
        back_summary, provider = speech_services.translate_text(summary, language, "en")
        back_topic, _ = speech_services.translate_text(topic, language, "en")
        translated = provider is not None
        summary, topic = back_summary, back_topic

    if not topic:
        topic = fallback_topic(text, config.TOPIC_FALLBACK_WORDS)
    return {"summary": summary, "topic": topic, "fallback": False, "translated": translated}


def process_recording(chunks, mimetype=None, language=None, start_keyword="", end_keyword=""):
    """Run the whole pipeline on buffered chunks (or one complete upload)."""
    language = language or config.DEFAULT_LANGUAGE
    audio = combine_chunks(chunks)
    if not audio:
        return PipelineResult(error="no_audio", message="No audio was captured")

    logger.info("Processing recording: %d chunk(s), %d bytes, language=%s", len(chunks), len(audio), language)

    try:
        diarized = speech_services.transcribe_diarized(audio, mimetype or "audio/webm", language)
    except speech_services.ServiceError as e:
        logger.error("Transcription failed: %s", e)
        return PipelineResult(error="transcription_failed", message="Could not transcribe the recording")

    full_transcript = diarized.get("transcript", "")
    speaker, speaker_text = primary_speaker(diarized.get("words") or [])
    if not speaker_text:
        speaker = None
        speaker_text = full_transcript

    text = strip_keyword_boundaries(speaker_text, start_keyword, end_keyword)
    if not text and speaker is not None:
        # Keywords may have been attributed to another speaker
        text = strip_keyword_boundaries(full_transcript, start_keyword, end_keyword)
    if not text:
        return PipelineResult(
            error="empty_transcript",
            message="No speech was captured between the keywords",
            fullTranscript=full_transcript,
        )

    summary = summarize(text, language)
    return PipelineResult(
        summary=summary["summary"],
        topic=summary["topic"],
        transcript=text,
        fullTranscript=full_transcript,
        speaker=speaker,
        language=language,
        provider=diarized.get("provider"),
        translated=summary["translated"],
        fallback=summary["fallback"],
    )
