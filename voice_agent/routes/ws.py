from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from voice_agent.dependencies import get_ws_services
from voice_agent.logging.flight_recorder import FlightRecorder
from voice_agent.services.media_stream import MediaStreamHandler

router = APIRouter()


@router.websocket("/twilio/media-stream")
async def twilio_media_stream(websocket: WebSocket) -> None:
    await websocket.accept()
    services = get_ws_services(websocket)
    recorder = FlightRecorder()
    handler = MediaStreamHandler(
        websocket.send_json,
        registry=services.registry,
        agent=services.agent,
        synthesizer=services.synthesizer,
        recognizer_factory=services.recognizer_factory,
        recorder=recorder,
        filler_initial_delay_ms=services.filler_initial_delay_ms,
        filler_repeat_interval_ms=services.filler_repeat_interval_ms,
    )

    recorder.log("WS", "connection_accepted", remote_addr=str(websocket.client))
    try:
        while True:
            message = await websocket.receive()
            message_type = message.get("type")

            if message_type in {"websocket.disconnect", "websocket.close"}:
                recorder.log("WS", "disconnect", code=message.get("code"))
                break
            elif message.get("text") is not None:
                await handler.handle_message(message["text"])
            elif message.get("bytes") is not None:
                recorder.log("WS", "binary_ignored", bytes=len(message["bytes"]))
            else:
                recorder.log("WS", "unknown_message", keys=list(message.keys()))
    except WebSocketDisconnect:
        recorder.log("WS", "websocket_disconnect")
    except Exception as e:
        recorder.log("WS", "error", error=str(e))
        raise
    finally:
        await handler.cleanup()
