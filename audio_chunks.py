import io
import logging
import os
import wave

logger = logging.getLogger(__name__)

MIMETYPE_SUFFIXES = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/webm": ".webm",
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
}


def is_wav(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def suffix_for(mimetype: str, filename: str = "") -> str:
    """File suffix for an upload, preferring the client's filename."""
    ext = os.path.splitext(filename or "")[-1]
    if ext:
        return ext
    base = (mimetype or "").split(";")[0].strip().lower()
    return MIMETYPE_SUFFIXES.get(base, ".webm")


def combine_chunks(chunks):
    """
    Join buffered audio chunks into one payload.

    WAV chunks each carry their own header, so their frames are re-written
    under a single header. Anything else (WebM/Ogg from MediaRecorder, where
    only the first chunk has the container header) is concatenated as-is.
    """
    chunks = [c for c in chunks if c]
    if not chunks:
        return b""
    if len(chunks) == 1:
        return chunks[0]
    if all(is_wav(c) for c in chunks):
        try:
            return _merge_wav(chunks)
        except (wave.Error, EOFError) as e:
            logger.warning("WAV merge failed (%s); concatenating raw bytes", e)
    return b"".join(chunks)


def _merge_wav(chunks):
    out = io.BytesIO()
    params = None
    with wave.open(out, "wb") as writer:
        for i, chunk in enumerate(chunks):
            with wave.open(io.BytesIO(chunk), "rb") as reader:
                chunk_params = (reader.getnchannels(), reader.getsampwidth(), reader.getframerate())
                if params is None:
                    params = chunk_params
                    writer.setnchannels(params[0])
                    writer.setsampwidth(params[1])
                    writer.setframerate(params[2])
                elif chunk_params != params:
                    raise wave.Error(f"chunk {i} format {chunk_params} differs from {params}")
                writer.writeframes(reader.readframes(reader.getnframes()))
    return out.getvalue()
