from voice_agent.logging.flight_recorder import FlightRecorder


def test_caller_identity_is_redacted():
    recorder = FlightRecorder(call_id="CA1")
    recorder.log("TOOL", "create_inquiry", caller_name="Jamie Rivera", caller_phone="090-0000-0000", section="1F-A")

    metadata = recorder.events[0].metadata
    assert metadata["caller_name"] == "***"
    assert metadata["caller_phone"] == "***"
    assert metadata["section"] == "1F-A"


def test_summary_groups_events_in_pipeline_order():
    recorder = FlightRecorder(call_id="CA1")
    with recorder.stage("TTS", chars=12):
        pass
    recorder.log("ASR", "final")
    with recorder.stage("PLAN"):
        pass
    recorder.log("ASR", "final")
    recorder.log("CUSTOM", "note")

    summary = recorder.summary()

    assert summary["call_id"] == "CA1"
    assert list(summary["stages"]) == ["ASR", "PLAN", "TTS", "CUSTOM"]
    assert summary["stages"]["ASR"] == {"events": 2, "elapsed_ms": 0.0}
    assert summary["stages"]["TTS"]["events"] == 1
    assert summary["total_ms"] >= summary["stages"]["TTS"]["elapsed_ms"]
