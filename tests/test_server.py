import io

import requests

import server

KEYWORDS = {"startKeyword": "abracadabra", "endKeyword": "alakazam"}


def join_pair(connect, received, session_id="s1", **magician_extra):
    magician = connect(session_id, "magician", **magician_extra)
    spectator = connect(session_id, "spectator")
    received(magician)
    received(spectator)
    return magician, spectator


# ---------- WebSocket signaling ----------

def test_join_replies_joined_and_ready_once_both_roles_present(connect, received):
    magician = connect("s1", "magician", startKeyword="Abracadabra", language="es")
    events = received(magician)
    assert events["joined"] == [{
        "sessionId": "s1",
        "role": "magician",
        "startKeyword": "Abracadabra",
        "endKeyword": server.config.DEFAULT_END_KEYWORD,
        "language": "es",
    }]
    assert "ready" not in events

    spectator = connect("s1", "spectator")
    assert received(magician)["ready"] == [{"sessionId": "s1"}]
    events = received(spectator)
    assert events["joined"][0]["role"] == "spectator"
    assert events["ready"] == [{"sessionId": "s1"}]


def test_join_with_bad_payload(connect, received):
    client = connect()
    client.emit("join", {"sessionId": "s1", "role": "audience"})
    client.emit("join", {"role": "magician"})
    client.emit("join", "not-an-object")
    assert len(received(client)["join_error"]) == 3


def test_test_message_is_relayed_to_peer(connect, received):
    magician, spectator = join_pair(connect, received)
    spectator.emit("test", {"sessionId": "s1", "message": "ping"})
    assert received(magician)["test"] == [{"sessionId": "s1", "from": "spectator", "message": "ping"}]


def test_test_message_errors(connect, received):
    stranger = connect()
    stranger.emit("test", {"sessionId": "s1"})
    assert "test_error" in received(stranger)

    magician = connect("s1", "magician")
    received(magician)
    magician.emit("test", {"sessionId": "s1"})
    assert received(magician)["test_error"] == [{"message": "No spectator connected"}]


def test_last_disconnect_removes_session_and_history(connect, received, registry):
    magician, spectator = join_pair(connect, received)
    session = registry.get("s1")
    session.history.append({"summary": "old"})

    spectator.disconnect()
    assert "s1" in registry
    assert "spectator" not in session.sockets

    magician.disconnect()
    assert "s1" not in registry
    assert session.sockets == {}
    assert session.history == []


def test_health_lists_sessions(http, connect):
    connect("s1", "magician")
    resp = http.get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "sessions": ["s1"]}


# ---------- Keyword-triggered capture over HTTP ----------

def test_keyword_cycle_runs_pipeline_and_fans_out(connect, received, upload, speech, registry):
    speech.chunk_texts = {
        b"c0": "Hello there",
        b"c1": "Abracadabra!",
        b"c2": "I picture a lighthouse",
        b"c3": "Alakazam.",
    }
    speech.diarized = {"transcript": "Abracadabra! I picture a lighthouse", "words": [], "provider": "deepgram"}
    magician, spectator = join_pair(connect, received, **KEYWORDS)

    resp = upload("/api/process-audio-chunk", b"c0", sessionId="s1")
    assert resp.get_json() == {"success": True, "transcript": "Hello there", "isRecording": False, "event": "none"}
    assert received(magician)["transcript"] == [{"sessionId": "s1", "text": "Hello there"}]

    resp = upload("/api/process-audio-chunk", b"c1", sessionId="s1")
    assert resp.get_json()["event"] == "started"
    events = received(magician)
    assert events["keyword_detected"] == [
        {"sessionId": "s1", "type": "start", "keyword": "abracadabra", "manual": False}
    ]

    assert upload("/api/process-audio-chunk", b"c2", sessionId="s1").get_json()["event"] == "appended"

    body = upload("/api/process-audio-chunk", b"c3", sessionId="s1").get_json()
    assert body["event"] == "stopped"
    assert body["isRecording"] is False
    assert body["result"]["transcript"] == "I picture a lighthouse"

    assert speech.diarized_calls == [{"audio": b"c1c2", "mimetype": "audio/webm", "language": "en"}]

    events = received(magician)
    assert events["keyword_detected"][0]["type"] == "end"
    summary = events["summary"][0]
    assert summary["sessionId"] == "s1"
    assert summary["summary"] == "They are thinking of a red bicycle."
    assert summary["topic"] == "Red bicycle"
    assert received(spectator)["summary"] == [summary]
    assert len(registry.get("s1").history) == 1


def test_end_keyword_without_recording_never_calls_pipeline(connect, received, upload, speech):
    speech.chunk_texts = {b"c1": "alakazam"}
    magician, _ = join_pair(connect, received, **KEYWORDS)

    body = upload("/api/process-audio-chunk", b"c1", sessionId="s1").get_json()
    assert body["event"] == "empty"
    assert "no_recording_error" in received(magician)
    assert speech.diarized_calls == []


def test_form_fields_configure_keywords(connect, received, upload, speech, registry):
    speech.chunk_texts = {b"c1": "hocus pocus"}
    magician, _ = join_pair(connect, received)
    body = upload("/api/process-audio-chunk", b"c1", sessionId="s1",
                  startKeyword="Hocus Pocus", endKeyword="Presto", language="fr").get_json()
    assert body["event"] == "started"
    capture = registry.get("s1").capture
    assert (capture.start_keyword, capture.end_keyword, capture.language) == ("Hocus Pocus", "Presto", "fr")


def test_chunk_transcription_failure_degrades(connect, received, upload, speech):
    speech.chunk_error = True
    magician, _ = join_pair(connect, received, **KEYWORDS)
    resp = upload("/api/process-audio-chunk", b"c1", sessionId="s1")
    assert resp.status_code == 200
    assert resp.get_json()["transcript"] == ""
    assert "transcript" not in received(magician)


def test_process_chunk_validation(http, upload, connect):
    connect("s1", "spectator")
    assert http.post("/api/process-audio-chunk", data={"sessionId": "s1"},
                     content_type="multipart/form-data").status_code == 400
    assert upload("/api/process-audio-chunk", b"c1").status_code == 400
    assert upload("/api/process-audio-chunk", b"c1", sessionId="missing").status_code == 404
    assert upload("/api/process-audio-chunk", b"", sessionId="s1").status_code == 400


def test_upload_too_large_returns_json_413(upload, connect, monkeypatch):
    connect("s1", "spectator")
    monkeypatch.setitem(server.app.config, "MAX_CONTENT_LENGTH", 64)
    resp = upload("/api/process-audio-chunk", b"x" * 1024, sessionId="s1")
    assert resp.status_code == 413
    assert "error" in resp.get_json()


# ---------- Manual control ----------

def test_manual_start_and_end(connect, received, upload, speech):
    speech.chunk_texts = {b"c1": "my cat Felix"}
    speech.diarized = {"transcript": "my cat Felix", "words": [], "provider": "deepgram"}
    magician, spectator = join_pair(connect, received, **KEYWORDS)

    magician.emit("manual_start", {"sessionId": "s1"})
    assert received(magician)["keyword_detected"] == [
        {"sessionId": "s1", "type": "start", "keyword": None, "manual": True}
    ]
    assert upload("/api/process-audio-chunk", b"c1", sessionId="s1").get_json()["event"] == "appended"

    # Second start while recording changes nothing
    magician.emit("manual_start", {"sessionId": "s1"})
    events = received(magician)
    assert "keyword_detected" not in events

    magician.emit("manual_end", {"sessionId": "s1"})
    events = received(magician)
    assert events["keyword_detected"][0]["type"] == "end"
    assert events["summary"][0]["transcript"] == "my cat Felix"
    assert speech.diarized_calls[0]["audio"] == b"c1"
    assert "summary" in received(spectator)


def test_manual_end_with_nothing_buffered(connect, received, speech):
    magician, _ = join_pair(connect, received, **KEYWORDS)
    magician.emit("manual_end", {"sessionId": "s1"})
    assert "no_recording_error" in received(magician)
    assert speech.diarized_calls == []


def test_manual_controls_for_unknown_session(connect, received):
    client = connect()
    client.emit("manual_start", {"sessionId": "nope"})
    client.emit("manual_end", {"sessionId": "nope"})
    events = received(client)
    assert "manual_start_error" in events
    assert "manual_end_error" in events


# ---------- Summarize on demand ----------

def test_summarize_text_goes_to_both_roles(connect, received, speech):
    magician, spectator = join_pair(connect, received)
    spectator.emit("summarize", {"sessionId": "s1", "text": "I picture a red bicycle"})

    events = received(spectator)
    assert events["summarize_complete"] == [{"sessionId": "s1", "success": True}]
    assert events["summary"][0]["topic"] == "Red bicycle"
    assert received(magician)["summary"][0]["transcript"] == "I picture a red bicycle"
    assert speech.summarized == ["I picture a red bicycle"]


def test_summarize_defaults_to_session_transcripts(connect, received, upload, speech):
    speech.chunk_texts = {b"c0": "hello there", b"c1": "general kenobi"}
    magician, _ = join_pair(connect, received)
    upload("/api/process-audio-chunk", b"c0", sessionId="s1")
    upload("/api/process-audio-chunk", b"c1", sessionId="s1")
    received(magician)

    magician.emit("summarize", {"sessionId": "s1"})
    assert "summarize_complete" in received(magician)
    assert speech.summarized == ["hello there general kenobi"]


def test_summarize_errors(connect, received, speech):
    stranger = connect()
    stranger.emit("summarize", {"sessionId": "nope", "text": "x"})
    assert "summarize_error" in received(stranger)

    magician = connect("s1", "magician")
    received(magician)
    magician.emit("summarize", {"sessionId": "s1"})
    assert received(magician)["summarize_error"][0]["message"] == "Nothing to summarize"
    assert speech.summarized == []


# ---------- Whole-file upload ----------

def test_upload_audio_without_session(upload, speech):
    speech.diarized = {"transcript": "Abracadabra a golden retriever alakazam", "words": [], "provider": "deepgram"}
    resp = upload("/api/upload-audio", b"full-recording", **KEYWORDS)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["transcript"] == "a golden retriever"
    assert body["summary"] == "They are thinking of a red bicycle."


def test_upload_audio_with_session_fans_out(connect, received, upload, speech):
    speech.diarized = {"transcript": "a golden retriever", "words": [], "provider": "deepgram"}
    magician, spectator = join_pair(connect, received, language="en")
    assert upload("/api/upload-audio", b"full", sessionId="s1").status_code == 200
    assert received(magician)["summary"][0]["transcript"] == "a golden retriever"
    assert "summary" in received(spectator)


def test_upload_audio_empty_transcript(connect, received, upload, speech):
    speech.diarized = {"transcript": "", "words": [], "provider": "deepgram"}
    magician, _ = join_pair(connect, received)
    resp = upload("/api/upload-audio", b"silence", sessionId="s1")
    assert resp.status_code == 422
    assert resp.get_json()["error"] == "empty_transcript"
    assert received(magician)["processing_error"][0]["error"] == "empty_transcript"


def test_upload_audio_validation(http, upload):
    assert http.post("/api/upload-audio", data={}, content_type="multipart/form-data").status_code == 400
    assert upload("/api/upload-audio", b"x", sessionId="missing").status_code == 404
    resp = http.post(
        "/api/upload-audio",
        data={"audio": (io.BytesIO(b""), "empty.webm", "audio/webm")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 400


# ---------- Audio over the socket ----------

def test_socket_audio_runs_the_chunk_path(connect, received, speech, registry):
    speech.chunk_texts = {b"c1": "Abracadabra", b"c2": "a paper crane", b"c3": "Alakazam"}
    speech.diarized = {"transcript": "Abracadabra a paper crane", "words": [], "provider": "deepgram"}
    magician, spectator = join_pair(connect, received, **KEYWORDS)

    ack = spectator.emit("audio_chunk", b"c1", callback=True)
    assert ack == {"sessionId": "s1", "transcript": "Abracadabra", "isRecording": True, "event": "started"}
    events = received(magician)
    assert events["transcript"] == [{"sessionId": "s1", "text": "Abracadabra"}]
    assert events["keyword_detected"][0]["type"] == "start"

    ack = spectator.emit("audio_chunk", {"audio": b"c2", "mimeType": "audio/ogg"}, callback=True)
    assert ack["event"] == "appended"
    assert spectator.emit("audio_chunk", b"c3", callback=True)["event"] == "stopped"

    assert speech.diarized_calls == [{"audio": b"c1c2", "mimetype": "audio/webm", "language": "en"}]
    assert received(magician)["summary"][0]["transcript"] == "a paper crane"
    assert registry.get("s1").chunks_received == 3


def test_socket_audio_rejected_from_wrong_sender(connect, received, speech):
    stranger = connect()
    stranger.emit("audio_chunk", b"c1")
    assert "audio_chunk_error" in received(stranger)

    magician, spectator = join_pair(connect, received)
    magician.emit("audio_chunk", b"c1")
    assert "audio_chunk_error" in received(magician)

    spectator.emit("audio_chunk", {"audio": "not bytes"})
    assert received(spectator)["audio_chunk_error"][0]["message"] == "Expected binary audio"


# ---------- Payload types ----------

def test_non_string_fields_are_coerced(connect, received, speech):
    magician = connect("s1", "magician", startKeyword=5, language="en")
    assert received(magician)["joined"][0]["startKeyword"] == "5"

    magician.emit("summarize", {"sessionId": "s1", "text": 42})
    assert "summarize_complete" in received(magician)
    assert speech.summarized == ["42"]

    magician.emit("manual_start", {"sessionId": "s1", "endKeyword": 9})
    assert received(magician)["keyword_detected"][0]["type"] == "start"


# ---------- Provider outages ----------

def test_upload_audio_with_broken_connection_returns_502(connect, received, upload, offline):
    magician, _ = join_pair(connect, received)
    resp = upload("/api/upload-audio", b"full", sessionId="s1")
    assert resp.status_code == 502
    assert resp.get_json()["error"] == "transcription_failed"
    assert received(magician)["processing_error"][0]["error"] == "transcription_failed"


def test_chunk_and_manual_end_survive_provider_outage(connect, received, upload, offline):
    offline["error"] = requests.TooManyRedirects("loop")
    magician, spectator = join_pair(connect, received)
    magician.emit("manual_start", {"sessionId": "s1"})
    resp = upload("/api/process-audio-chunk", b"c1", sessionId="s1")
    assert resp.status_code == 200
    assert resp.get_json()["transcript"] == ""

    magician.emit("manual_end", {"sessionId": "s1"})
    events = received(magician)
    assert events["processing_error"][0]["error"] == "transcription_failed"


def test_summarize_survives_provider_outage(connect, received, offline):
    magician, _ = join_pair(connect, received)
    magician.emit("summarize", {"sessionId": "s1", "text": "I picture the Eiffel Tower"})
    events = received(magician)
    assert events["summarize_complete"] == [{"sessionId": "s1", "success": True}]
    assert events["summary"][0]["fallback"] is True
