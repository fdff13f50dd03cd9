"""G.711 mu-law codec and sample-rate conversion for Twilio media streams.

Twilio sends and expects 8 kHz, 8-bit mu-law. Synthesized speech arrives as
signed 16-bit little-endian PCM at a higher rate, so every reply goes through
:func:`convert_to_outbound_format` before it is framed onto the socket.
"""

from __future__ import annotations

import math
import struct
from typing import List, Sequence

from voice_agent.models.realtime import AudioEncoding, AudioFrame

TWILIO_SAMPLE_RATE = 8000

MULAW_BIAS = 0x84
MULAW_CLIP = 32635

# exponent lookup on the upper byte of the biased magnitude
_EXPONENT_TABLE: List[int] = [0, 0] + [i.bit_length() - 1 for i in range(2, 256)]


def _build_decode_table() -> List[int]:
    table = []
    for value in range(256):
        u_value = ~value & 0xFF
        exponent = (u_value >> 4) & 0x07
        mantissa = u_value & 0x0F
        magnitude = (((mantissa << 3) + MULAW_BIAS) << exponent) - MULAW_BIAS
        table.append(-magnitude if u_value & 0x80 else magnitude)
    return table


_DECODE_TABLE: List[int] = _build_decode_table()


def encode_sample(sample: int) -> int:
    sign = (sample >> 8) & 0x80
    if sign:
        sample = -sample
    if sample > MULAW_CLIP:
        sample = MULAW_CLIP
    sample += MULAW_BIAS
    exponent = _EXPONENT_TABLE[(sample >> 7) & 0xFF]
    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def decode_sample(value: int) -> int:
    return _DECODE_TABLE[value & 0xFF]


def quantization_step(sample: int) -> int:
    """Width of the companding band ``sample`` falls into."""
    magnitude = min(abs(sample), MULAW_CLIP) + MULAW_BIAS
    return 1 << (_EXPONENT_TABLE[(magnitude >> 7) & 0xFF] + 3)


def _unpack(pcm16: bytes) -> Sequence[int]:
    count = len(pcm16) // 2
    return struct.unpack(f"<{count}h", pcm16[: count * 2])


def _pack(samples: Sequence[int]) -> bytes:
    return struct.pack(f"<{len(samples)}h", *samples)


def encode(pcm16: bytes) -> bytes:
    """PCM16 little-endian -> mu-law. A trailing odd byte is ignored."""
    return bytes(encode_sample(sample) for sample in _unpack(pcm16))


def decode(mulaw: bytes) -> bytes:
    """mu-law -> PCM16 little-endian."""
    return _pack([_DECODE_TABLE[value] for value in mulaw])


def resample(pcm16: bytes, from_rate: int, to_rate: int) -> bytes:
    """Linear-interpolation resampler. No anti-aliasing filter; speech only."""
    if from_rate == to_rate:
        return pcm16
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError(f"invalid sample rates {from_rate}->{to_rate}")

    samples = _unpack(pcm16)
    if not samples:
        return b""
    ratio = from_rate / to_rate
    output_count = math.floor(len(samples) / ratio)
    last = len(samples) - 1
    output: List[int] = []
    for i in range(output_count):
        position = i * ratio
        index = math.floor(position)
        frac = position - index
        first = samples[min(index, last)]
        second = samples[min(index + 1, last)]
        # round half up
        output.append(math.floor(first * (1 - frac) + second * frac + 0.5))
    return _pack(output)


def convert_to_outbound_format(pcm16: bytes, source_rate: int = 24000) -> bytes:
    """Resample to 8 kHz and mu-law encode in one pass."""
    return encode(resample(pcm16, source_rate, TWILIO_SAMPLE_RATE))


def chunk_frames(audio: bytes, frame_size: int = 160) -> List[bytes]:
    return [audio[i : i + frame_size] for i in range(0, len(audio), frame_size)]


def generate_tone(duration_s: float, freq_hz: float = 440.0, sample_rate: int = TWILIO_SAMPLE_RATE) -> bytes:
    """Mu-law sine tone, used as stand-in audio when TTS is not configured."""
    num_samples = int(duration_s * sample_rate)
    pcm16 = [
        int(0.3 * 32767 * math.sin(2 * math.pi * freq_hz * n / sample_rate))
        for n in range(num_samples)
    ]
    return encode(_pack(pcm16))


def to_twilio_frame(frame: AudioFrame) -> AudioFrame:
    """Normalize any frame to 8 kHz mu-law."""
    if frame.encoding is AudioEncoding.MULAW and frame.sample_rate == TWILIO_SAMPLE_RATE:
        return frame
    pcm16 = decode(frame.data) if frame.encoding is AudioEncoding.MULAW else frame.data
    return AudioFrame(
        data=convert_to_outbound_format(pcm16, frame.sample_rate),
        encoding=AudioEncoding.MULAW,
        sample_rate=TWILIO_SAMPLE_RATE,
    )
