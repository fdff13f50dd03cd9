import json
import time

from fastapi.testclient import TestClient

from fakes import FakeRecognizerFactory, ScriptedProvider, make_services, text_reply, tool_reply
from voice_agent.main import create_app


def _start_call(ws, stream_sid="MZ123"):
    ws.send_text(json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"}))
    ws.send_text(
        json.dumps(
            {
                "event": "start",
                "streamSid": stream_sid,
                "start": {"streamSid": stream_sid, "callSid": "CA123", "accountSid": "AC123"},
            }
        )
    )


def _wait_for_sessions(client, expected, timeout=2.0):
    deadline = time.monotonic() + timeout
    while True:
        active = client.get("/health/").json()["active_sessions"]
        if active == expected or time.monotonic() > deadline:
            return active
        time.sleep(0.01)


def test_call_checks_availability_and_answers(repository):
    provider = ScriptedProvider(
        [
            tool_reply(
                "check_section_availability",
                section_name="1F-A",
                start_date="2026-02-12",
                end_date="2026-02-15",
            ),
            text_reply("Yes, 1F-A is free from the 12th to the 15th at 15,000 yen per day."),
        ]
    )
    factory = FakeRecognizerFactory()
    services = make_services(provider, repository, recognizer_factory=factory)

    with TestClient(create_app(services)) as client:
        with client.websocket_connect("/twilio/media-stream") as ws:
            _start_call(ws)
            greeting = [ws.receive_json(), ws.receive_json()]
            assert [m["event"] for m in greeting] == ["media", "media"]
            assert greeting[0]["streamSid"] == "MZ123"
            assert _wait_for_sessions(client, 1) == 1

            factory.last.emit("Is 1F-A free from the 12th to the 15th?")

            reply = [ws.receive_json(), ws.receive_json(), ws.receive_json()]
            assert [m["event"] for m in reply] == ["media", "media", "mark"]
            assert reply[2]["mark"]["name"] == "response-1"

            ws.send_text(json.dumps({"event": "stop", "streamSid": "MZ123", "stop": {"callSid": "CA123"}}))
            assert _wait_for_sessions(client, 0) == 0

    tool_turn = json.loads(provider.calls[1][-1]["content"])
    assert tool_turn["available"] is True
    assert services.synthesizer.spoken[-1].startswith("Yes, 1F-A is free")
    assert factory.last.closed == 1


def test_malformed_frames_do_not_end_the_call(repository):
    services = make_services(ScriptedProvider([]), repository)

    with TestClient(create_app(services)) as client:
        with client.websocket_connect("/twilio/media-stream") as ws:
            ws.send_text("{not json")
            ws.send_text(json.dumps({"event": "unknown"}))
            _start_call(ws)
            assert ws.receive_json()["event"] == "media"
            assert ws.receive_json()["event"] == "media"

        # socket close runs the same cleanup as stop
        assert _wait_for_sessions(client, 0) == 0


def test_twilio_voice_returns_stream_twiml(monkeypatch, repository):
    monkeypatch.delenv("TWILIO_MEDIA_STREAM_BASE", raising=False)
    client = TestClient(create_app(make_services(ScriptedProvider([]), repository)))

    response = client.post("/twilio/voice")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert "<Connect>" in response.text
    assert '<Stream url="wss://testserver/twilio/media-stream"/>' in response.text


def test_twilio_voice_honours_stream_base(monkeypatch, repository):
    monkeypatch.setenv("TWILIO_MEDIA_STREAM_BASE", "wss://voice.example.com/")
    client = TestClient(create_app(make_services(ScriptedProvider([]), repository)))

    response = client.post("/twilio/voice")

    assert 'url="wss://voice.example.com/twilio/media-stream"' in response.text


def test_health_reports_sessions(repository):
    with TestClient(create_app(make_services(ScriptedProvider([]), repository))) as client:
        assert client.get("/health/").json() == {"status": "ok", "active_sessions": 0}


def test_chat_runs_agent_loop(repository):
    provider = ScriptedProvider(
        [
            tool_reply("list_sections", category="office"),
            text_reply("We have two office sections, 3F-A and 3F-B."),
        ]
    )
    client = TestClient(create_app(make_services(provider, repository)))

    response = client.post("/chat", json={"message": "Any offices?", "history": []})

    assert response.status_code == 200
    body = response.json()
    assert body["text"] == "We have two office sections, 3F-A and 3F-B."
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "tool", "assistant"]


def test_chat_rejects_empty_message(repository):
    client = TestClient(create_app(make_services(ScriptedProvider([]), repository)))
    assert client.post("/chat", json={"message": "  "}).status_code == 400
    assert client.post("/chat", json={}).status_code == 400


def test_chat_reports_agent_failure(repository):
    client = TestClient(create_app(make_services(ScriptedProvider([RuntimeError("boom")]), repository)))
    response = client.post("/chat", json={"message": "hello"})
    assert response.status_code == 500
    assert response.json() == {"detail": "Failed to process the message"}
