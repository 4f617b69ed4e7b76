"""
Clients for the hosted speech, translation and language-model APIs.

Every call goes through ``_post_with_retry`` so transient network errors,
timeouts, 429s and 5xx responses are retried a couple of times. Anything
that still fails is raised as ``ServiceError``; callers decide how to
degrade.
"""

import json
import logging
import os
import tempfile
import textwrap
import time

import assemblyai as aai
import httpx
import requests

import config
from audio_chunks import suffix_for

logger = logging.getLogger(__name__)

aai.settings.api_key = config.ASSEMBLYAI_API_KEY

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
TRANSIENT_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


class ServiceError(RuntimeError):
    """An external API call failed after retries."""

    def __init__(self, service, message):
        super().__init__(f"{service}: {message}")
        self.service = service


def _post_with_retry(service, url, **kwargs):
    kwargs.setdefault("timeout", config.API_TIMEOUT)
    attempts = config.API_RETRIES + 1
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            resp = requests.post(url, **kwargs)
            if resp.status_code in RETRYABLE_STATUS:
                last_error = f"HTTP {resp.status_code}"
            else:
                resp.raise_for_status()
                return resp.json()
        except requests.HTTPError as e:
            # 4xx other than 429: retrying will not help
            raise ServiceError(service, f"HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except TRANSIENT_ERRORS as e:
            last_error = str(e)
        except requests.JSONDecodeError as e:
            raise ServiceError(service, f"invalid JSON response: {e}") from e
        except requests.RequestException as e:
            # Redirect loops, bad URLs, undecodable bodies
            raise ServiceError(service, f"request failed: {e}") from e
        except ValueError as e:
            raise ServiceError(service, f"invalid JSON response: {e}") from e

        if attempt < attempts:
            logger.warning("%s request failed (%s), retry %d/%d", service, last_error, attempt, attempts - 1)
            time.sleep(config.API_RETRY_DELAY * attempt)

    raise ServiceError(service, f"failed after {attempts} attempts: {last_error}")


def is_english(language):
    return not language or language.lower().split("-")[0] == "en"


def base_language(language):
    """'es-ES' -> 'es'; Google Translate wants the bare code for most languages."""
    return (language or "en").split("-")[0].lower()


# ------------------------ Deepgram ---------------------------

def deepgram_listen(audio, mimetype, language, diarize=False):
    if not config.DEEPGRAM_API_KEY:
        raise ServiceError("deepgram", "No DEEPGRAM_API_KEY set")
    params = {
        "model": config.DEEPGRAM_MODEL,
        "language": language or config.DEFAULT_LANGUAGE,
        "punctuate": "true",
        "smart_format": "true",
    }
    if diarize:
        params["diarize"] = "true"
    return _post_with_retry(
        "deepgram",
        config.DEEPGRAM_URL,
        params=params,
        headers={
            "Authorization": f"Token {config.DEEPGRAM_API_KEY}",
            "Content-Type": (mimetype or "audio/webm").split(";")[0],
        },
        data=audio,
    )


def _first_alternative(result):
    channels = (result.get("results") or {}).get("channels") or []
    if not channels:
        return {}
    alternatives = channels[0].get("alternatives") or []
    return alternatives[0] if alternatives else {}


def transcribe_chunk(audio, mimetype="audio/webm", language="en"):
    """Plain transcript of one uploaded chunk."""
    alt = _first_alternative(deepgram_listen(audio, mimetype, language))
    return (alt.get("transcript") or "").strip()


def transcribe_diarized(audio, mimetype="audio/webm", language="en"):
    """
    Transcript with per-word speaker labels.

    Returns ``{"transcript": str, "words": [{"word", "speaker"}], "provider": str}``.
    Deepgram is tried first; AssemblyAI speaker labels are used when Deepgram
    fails and an AssemblyAI key is configured.
    """
    try:
        alt = _first_alternative(deepgram_listen(audio, mimetype, language, diarize=True))
        words = [
            {
                "word": w.get("punctuated_word") or w.get("word") or "",
                "speaker": w.get("speaker"),
            }
            for w in (alt.get("words") or [])
        ]
        return {
            "transcript": (alt.get("transcript") or "").strip(),
            "words": words,
            "provider": "deepgram",
        }
    except ServiceError:
        if not aai.settings.api_key:
            raise
        logger.warning("Deepgram diarization failed; trying AssemblyAI", exc_info=True)

    suffix = suffix_for(mimetype)
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
        tmp.write(audio)
        path = tmp.name
    try:
        return transcribe_with_speaker_labels(path, language)
    finally:
        try:
            os.remove(path)
        except OSError:
            pass


def transcribe_with_speaker_labels(file_path, language="en"):
    if not aai.settings.api_key:
        raise ServiceError("assemblyai", "No ASSEMBLYAI_API_KEY set")

    transcription_config = aai.TranscriptionConfig(
        speaker_labels=True,   # diarization
        punctuate=True,
        format_text=True,
        language_code=base_language(language),
    )
    transcriber = aai.Transcriber()
    try:
        t = transcriber.transcribe(file_path, config=transcription_config)
    except (aai.types.TranscriptError, httpx.HTTPError) as e:
        raise ServiceError("assemblyai", f"Transcription request failed: {e}") from e
    if t.status != aai.TranscriptStatus.completed:
        raise ServiceError("assemblyai", f"Transcription failed: {t.error}")

    words = []
    for utt in (t.utterances or []):
        for w in (utt.words or []):
            words.append({"word": w.text, "speaker": utt.speaker})

    return {
        "transcript": (t.text or "").strip(),
        "words": words,
        "provider": "assemblyai",
    }


# ------------------------- Gemini ----------------------------

def gemini_generate(prompt, json_output=False, temperature=0.3):
    if not config.GEMINI_API_KEY:
        raise ServiceError("gemini", "No GEMINI_API_KEY set")
    generation_config = {"temperature": temperature, "maxOutputTokens": 1024}
    if json_output:
        generation_config["responseMimeType"] = "application/json"
    result = _post_with_retry(
        "gemini",
        config.GEMINI_URL.format(model=config.GEMINI_MODEL),
        params={"key": config.GEMINI_API_KEY},
        headers={"Content-Type": "application/json"},
        json={
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        },
    )
    try:
        parts = result["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError) as e:
        raise ServiceError("gemini", f"unexpected response shape: {e}") from e
    return "".join(p.get("text", "") for p in parts).strip()


def _strip_code_fences(text):
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def summarize_text(text):
    """
    One-sentence summary and a short topic for an English transcript.
    Returns ``{"summary": str, "topic": str}``.
    """
    prompt = textwrap.dedent(f"""
    A person was asked to think of something and talk about it. Below is what they said.
    Reply with JSON only, no markdown:
    {{"summary": "<one short sentence describing what they were thinking about>",
      "topic": "<the thing itself, 1 to 4 words>"}}

    Transcript:
    {text}
    """).strip()
    raw = gemini_generate(prompt, json_output=True)
    try:
        data = json.loads(_strip_code_fences(raw))
    except json.JSONDecodeError as e:
        raise ServiceError("gemini", f"Error parsing summary: {e}") from e
    if not isinstance(data, dict):
        raise ServiceError("gemini", "summary response is not an object")
    summary = str(data.get("summary") or "").strip()
    topic = str(data.get("topic") or "").strip()
    if not summary and not topic:
        raise ServiceError("gemini", "empty summary")
    return {"summary": summary, "topic": topic}


# ------------------------ Translation --------------------------

def google_translate(text, target, source=None):
    if not config.GOOGLE_TRANSLATE_API_KEY:
        raise ServiceError("google-translate", "No GOOGLE_TRANSLATE_API_KEY set")
    data = {"q": text, "target": base_language(target), "format": "text"}
    if source:
        data["source"] = base_language(source)
    result = _post_with_retry(
        "google-translate",
        config.TRANSLATE_URL,
        params={"key": config.GOOGLE_TRANSLATE_API_KEY},
        data=data,
    )
    try:
        return result["data"]["translations"][0]["translatedText"]
    except (KeyError, IndexError, TypeError) as e:
        raise ServiceError("google-translate", f"unexpected response shape: {e}") from e


def gemini_translate(text, target, source=None):
    src = f" from {source}" if source else ""
    prompt = (
        f"Translate the following text{src} into the language with code '{target}'. "
        "Reply with the translation only.\n\n"
        f"{text}"
    )
    translated = gemini_generate(prompt, temperature=0.0)
    if not translated:
        raise ServiceError("gemini", "empty translation")
    return translated


def translate_text(text, target, source=None):
    """
    Translate with the first provider that succeeds.

    Returns ``(text, provider)``; provider is None when every provider failed
    and the original text came back unchanged.
    """
    if not text or base_language(target) == base_language(source or ""):
        return text, None
    for name, translate in (("google-translate", google_translate), ("gemini", gemini_translate)):
        try:
            return translate(text, target, source), name
        except ServiceError as e:
            logger.warning("Translation via %s failed: %s", name, e)
    return text, None
