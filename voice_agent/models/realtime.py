from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class _StreamEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sequence_number: Optional[str] = Field(default=None, alias="sequenceNumber")
    stream_sid: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("streamSid", "streamId")
    )


class MediaFormat(BaseModel):
    encoding: str = "audio/x-mulaw"
    sample_rate: int = Field(default=8000, alias="sampleRate")
    channels: int = 1

    model_config = ConfigDict(populate_by_name=True)


class StartInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stream_sid: str = Field(validation_alias=AliasChoices("streamSid", "streamId"))
    call_sid: str = Field(default="", validation_alias=AliasChoices("callSid", "callId"))
    account_sid: str = Field(default="", validation_alias=AliasChoices("accountSid", "accountId"))
    tracks: List[str] = Field(default_factory=list)
    media_format: MediaFormat = Field(default_factory=MediaFormat, alias="mediaFormat")


class MediaInfo(BaseModel):
    track: Optional[str] = None
    chunk: Optional[str] = None
    timestamp: Optional[str] = None
    payload: str = ""


class StopInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    call_sid: str = Field(default="", validation_alias=AliasChoices("callSid", "callId"))
    account_sid: str = Field(default="", validation_alias=AliasChoices("accountSid", "accountId"))


class MarkInfo(BaseModel):
    name: str = ""


class DtmfInfo(BaseModel):
    track: Optional[str] = None
    digit: str = ""


class ConnectedEvent(_StreamEvent):
    event: Literal["connected"]
    protocol: Optional[str] = None
    version: Optional[str] = None


class StartEvent(_StreamEvent):
    event: Literal["start"]
    start: StartInfo


class MediaEvent(_StreamEvent):
    event: Literal["media"]
    media: MediaInfo

    def audio(self) -> bytes:
        return base64.b64decode(self.media.payload) if self.media.payload else b""


class StopEvent(_StreamEvent):
    event: Literal["stop"]
    stop: StopInfo = Field(default_factory=StopInfo)


class MarkEvent(_StreamEvent):
    event: Literal["mark"]
    mark: MarkInfo = Field(default_factory=MarkInfo)


class DtmfEvent(_StreamEvent):
    event: Literal["dtmf"]
    dtmf: DtmfInfo = Field(default_factory=DtmfInfo)


StreamEvent = Annotated[
    Union[ConnectedEvent, StartEvent, MediaEvent, StopEvent, MarkEvent, DtmfEvent],
    Field(discriminator="event"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(StreamEvent)


def parse_stream_event(raw: Union[str, bytes]) -> StreamEvent:
    """Decode one socket frame. Raises ``pydantic.ValidationError`` on bad JSON or unknown events."""
    return _EVENT_ADAPTER.validate_json(raw)


def media_message(stream_sid: str, audio: bytes) -> Dict[str, Any]:
    return {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(audio).decode()},
    }


def mark_message(stream_sid: str, name: str) -> Dict[str, Any]:
    return {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}


def clear_message(stream_sid: str) -> Dict[str, Any]:
    return {"event": "clear", "streamSid": stream_sid}


class Transcript(BaseModel):
    text: str
    is_final: bool = False
    confidence: float = 0.0


class AudioEncoding(str, Enum):
    MULAW = "mulaw"
    PCM16 = "pcm16"


@dataclass(frozen=True)
class AudioFrame:
    data: bytes
    encoding: AudioEncoding
    sample_rate: int


class ToolCallRequest(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    call_id: str


class ToolCallResult(BaseModel):
    call_id: str
    name: str
    output: Dict[str, Any]
