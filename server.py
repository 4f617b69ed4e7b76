# server.py: magician/spectator relay (WebSocket signaling + audio upload)
# --------------------------------------------------------------------------
# Run:
#   pip install -e .
#   python server.py
# Needs DEEPGRAM_API_KEY and GEMINI_API_KEY (see .env.example).

import logging
import sys

from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO, emit
from werkzeug.exceptions import RequestEntityTooLarge

import config
import pipeline
import speech_services
from capture import EMPTY, IGNORED, STARTED, STOPPED
from sessions import MAGICIAN, ROLES, SPECTATOR, SessionRegistry

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "no_audio": 400,
    "empty_transcript": 422,
    "transcription_failed": 502,
}

# ---------- Flask app ----------

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_MB * 1024 * 1024
CORS(app, origins=config.cors_origins())
socketio = SocketIO(
    app,
    cors_allowed_origins=config.cors_origins(),
    async_mode=config.SOCKETIO_ASYNC_MODE,
)

registry = SessionRegistry()


# ---------- Fan-out helpers ----------

def send_to_role(session, role, event, data):
    """Emit to one role of a session. Returns False when that role is not connected."""
    sid = session.sockets.get(role)
    if not sid:
        logger.debug("No %s in session %s for %s", role, session.id, event)
        return False
    socketio.emit(event, data, to=sid)
    return True


def broadcast(session, event, data):
    for role in ROLES:
        send_to_role(session, role, event, data)


def publish_result(session, result):
    if result.ok:
        payload = {"sessionId": session.id, **result}
        session.history.append(payload)
        broadcast(session, "summary", payload)
    else:
        send_to_role(session, MAGICIAN, "processing_error", {
            "sessionId": session.id,
            "error": result["error"],
            "message": result["message"],
        })


def run_pipeline(session, chunks, mimetype):
    capture = session.capture
    result = pipeline.process_recording(
        chunks,
        mimetype=mimetype,
        language=capture.language,
        start_keyword=capture.start_keyword,
        end_keyword=capture.end_keyword,
    )
    publish_result(session, result)
    return result


def apply_capture_event(session, event):
    """Notify the magician about a capture transition; run the pipeline on stop."""
    if event.kind == STARTED:
        send_to_role(session, MAGICIAN, "keyword_detected", {
            "sessionId": session.id,
            "type": "start",
            "keyword": event.keyword,
            "manual": event.manual,
        })
    elif event.kind == STOPPED:
        send_to_role(session, MAGICIAN, "keyword_detected", {
            "sessionId": session.id,
            "type": "end",
            "keyword": event.keyword,
            "manual": event.manual,
        })
        return run_pipeline(session, event.chunks, event.mimetype)
    elif event.kind == EMPTY:
        send_to_role(session, MAGICIAN, "no_recording_error", {
            "sessionId": session.id,
            "message": "No audio was captured. Say the start keyword first, then try again.",
        })
    elif event.kind == IGNORED:
        logger.debug("Session %s already recording; start ignored", session.id)
    return None


# ---------- Chunk intake ----------

def ingest_chunk(session, data, mimetype):
    """
    One recorded chunk from the spectator's device, whichever way it arrived:
    transcribe it, forward the text to the magician and run keyword detection.
    Returns ``(text, capture_event, pipeline_result_or_None)``.
    """
    capture = session.capture
    session.touch()
    session.chunks_received += 1

    try:
        text = speech_services.transcribe_chunk(data, mimetype, capture.language)
    except speech_services.ServiceError as e:
        logger.warning("Chunk transcription failed for session %s: %s", session.id, e)
        text = ""

    logger.debug("Chunk #%d for %s (%d bytes): %r", session.chunks_received, session.id, len(data), text)
    if text:
        session.transcripts.append(text)
        send_to_role(session, MAGICIAN, "transcript", {"sessionId": session.id, "text": text})

    event = capture.feed(text, data, mimetype)
    return text, event, apply_capture_event(session, event)


# ---------- HTTP ----------

def _upload_mimetype(f):
    if f.mimetype and f.mimetype.startswith("audio/"):
        return f.mimetype
    return request.form.get("mimeType") or "audio/webm"


@app.errorhandler(RequestEntityTooLarge)
def upload_too_large(e):
    return jsonify({"error": f"Upload too large (max {config.MAX_UPLOAD_MB} MB)"}), 413


@app.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True, "sessions": registry.ids()})


@app.route("/api/process-audio-chunk", methods=["POST"])
def process_audio_chunk():
    if "audio" not in request.files:
        return jsonify({"error": "No audio file"}), 400
    session_id = (request.form.get("sessionId") or "").strip()
    if not session_id:
        return jsonify({"error": "Missing sessionId"}), 400
    session = registry.get(session_id)
    if session is None:
        return jsonify({"error": f"Unknown session {session_id}"}), 404

    f = request.files["audio"]
    data = f.read()
    if not data:
        return jsonify({"error": "Empty audio file"}), 400

    session.capture.configure(
        request.form.get("startKeyword"),
        request.form.get("endKeyword"),
        request.form.get("language"),
    )
    text, event, result = ingest_chunk(session, data, _upload_mimetype(f))

    body = {
        "success": True,
        "transcript": text,
        "isRecording": session.capture.is_recording,
        "event": event.kind,
    }
    if result is not None:
        body["result"] = result
    return jsonify(body)


@app.route("/api/upload-audio", methods=["POST"])
def upload_audio():
    """A complete recording in one upload; runs the summarization pipeline directly."""
    if "audio" not in request.files:
        return jsonify({"error": "No audio file"}), 400
    f = request.files["audio"]
    data = f.read()
    if not data:
        return jsonify({"error": "Empty audio file"}), 400

    session_id = (request.form.get("sessionId") or "").strip()
    session = registry.get(session_id) if session_id else None
    if session_id and session is None:
        return jsonify({"error": f"Unknown session {session_id}"}), 404

    capture = session.capture if session else None
    language = request.form.get("language") or (capture.language if capture else config.DEFAULT_LANGUAGE)
    start_keyword = request.form.get("startKeyword") or (capture.start_keyword if capture else "")
    end_keyword = request.form.get("endKeyword") or (capture.end_keyword if capture else "")

    result = pipeline.process_recording(
        [data],
        mimetype=_upload_mimetype(f),
        language=language,
        start_keyword=start_keyword,
        end_keyword=end_keyword,
    )
    if session is not None:
        session.touch()
        publish_result(session, result)

    if not result.ok:
        return jsonify({"success": False, **result}), ERROR_STATUS.get(result["error"], 500)
    return jsonify({"success": True, **result})


# ---------- WebSocket ----------

def _payload(data):
    return data if isinstance(data, dict) else {}


def _field(data, name):
    """A payload value as a stripped string; numbers are coerced, objects dropped."""
    value = data.get(name)
    if value is None or isinstance(value, (dict, list, bytes)):
        return ""
    return str(value).strip()


def _configure_capture(session, data):
    session.capture.configure(_field(data, "startKeyword"), _field(data, "endKeyword"), _field(data, "language"))


def _session_for(data):
    """The caller's session: by socket first, then by the sessionId it sent."""
    session, role = registry.lookup_sid(request.sid)
    if session is None:
        session_id = _field(data, "sessionId")
        session = registry.get(session_id) if session_id else None
    return session, role


@socketio.on("connect")
def on_connect():
    logger.info("WS client connected: %s", request.sid)


@socketio.on("disconnect")
def on_disconnect(reason=None):
    session, role, removed = registry.leave(request.sid)
    if session is None:
        logger.info("WS closed: %s (not joined)", request.sid)
        return
    logger.info("WS closed: role=%s session=%s%s", role, session.id, " (session removed)" if removed else "")


@socketio.on("join")
def on_join(data=None):
    data = _payload(data)
    session_id = _field(data, "sessionId")
    role = _field(data, "role").lower()
    if not session_id:
        emit("join_error", {"message": "Missing sessionId"})
        return
    if role not in ROLES:
        emit("join_error", {"message": f"Unknown role {role!r}; expected magician or spectator"})
        return

    session, replaced = registry.join(session_id, role, request.sid)
    if replaced:
        logger.info("Session %s: %s socket %s replaced by %s", session_id, role, replaced, request.sid)
    _configure_capture(session, data)
    capture = session.capture

    emit("joined", {
        "sessionId": session_id,
        "role": role,
        "startKeyword": capture.start_keyword,
        "endKeyword": capture.end_keyword,
        "language": capture.language,
    })
    logger.info("Joined: role=%s session=%s", role, session_id)
    if session.is_ready():
        broadcast(session, "ready", {"sessionId": session_id})


@socketio.on("test")
def on_test(data=None):
    data = _payload(data)
    session, role = registry.lookup_sid(request.sid)
    if session is None:
        emit("test_error", {"message": "Join a session first"})
        return
    session.touch()
    peer = session.peer_of(role)
    delivered = send_to_role(session, peer, "test", {
        "sessionId": session.id,
        "from": role,
        "message": _field(data, "message"),
    })
    if not delivered:
        emit("test_error", {"message": f"No {peer} connected"})


@socketio.on("summarize")
def on_summarize(data=None):
    data = _payload(data)
    session, _ = _session_for(data)
    if session is None:
        emit("summarize_error", {"message": "Unknown session"})
        return
    session.touch()

    text = _field(data, "text") or " ".join(session.transcripts).strip()
    if not text:
        emit("summarize_error", {"sessionId": session.id, "message": "Nothing to summarize"})
        return
    language = _field(data, "language") or session.capture.language

    summary = pipeline.summarize(text, language)
    payload = {
        "sessionId": session.id,
        "summary": summary["summary"],
        "topic": summary["topic"],
        "transcript": text,
        "language": language,
        "translated": summary["translated"],
        "fallback": summary["fallback"],
    }
    session.history.append(payload)
    broadcast(session, "summary", payload)
    emit("summarize_complete", {"sessionId": session.id, "success": True})


@socketio.on("manual_start")
def on_manual_start(data=None):
    data = _payload(data)
    session, _ = _session_for(data)
    if session is None:
        emit("manual_start_error", {"message": "Unknown session"})
        return
    session.touch()
    _configure_capture(session, data)
    apply_capture_event(session, session.capture.manual_start())


@socketio.on("manual_end")
def on_manual_end(data=None):
    data = _payload(data)
    session, _ = _session_for(data)
    if session is None:
        emit("manual_end_error", {"message": "Unknown session"})
        return
    session.touch()
    apply_capture_event(session, session.capture.manual_stop())


@socketio.on("audio_chunk")
def on_audio_chunk(data=None):
    """
    Audio streamed by the spectator over the socket instead of HTTP: either
    the raw bytes, or ``{"audio": bytes, "mimeType": ...}`` with optional
    keyword/language fields. Acknowledged like the HTTP chunk endpoint.
    """
    session, role = registry.lookup_sid(request.sid)
    if session is None or role != SPECTATOR:
        emit("audio_chunk_error", {"message": "Join a session as spectator first"})
        return None

    options = _payload(data)
    audio = options.get("audio") if options else data
    if not isinstance(audio, (bytes, bytearray)) or not audio:
        emit("audio_chunk_error", {"sessionId": session.id, "message": "Expected binary audio"})
        return None

    _configure_capture(session, options)
    text, event, _ = ingest_chunk(session, bytes(audio), _field(options, "mimeType") or "audio/webm")
    return {
        "sessionId": session.id,
        "transcript": text,
        "isRecording": session.capture.is_recording,
        "event": event.kind,
    }


# ---------- Housekeeping ----------

def sweep_sessions():
    while True:
        socketio.sleep(config.SESSION_SWEEP_INTERVAL_SECONDS)
        removed = registry.sweep()
        if removed:
            logger.info("Swept %d idle session(s)", len(removed))


def main():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    missing = config.missing_api_keys()
    if missing:
        logger.error("Missing API key(s): %s. Check .env", ", ".join(missing))
        sys.exit(1)

    socketio.start_background_task(sweep_sessions)
    logger.info("Starting relay server on %s:%s", config.HOST, config.PORT)
    socketio.run(app, host=config.HOST, port=config.PORT, debug=config.DEBUG, allow_unsafe_werkzeug=True)


if __name__ == "__main__":
    main()
