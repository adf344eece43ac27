from __future__ import annotations

import struct
from dataclasses import dataclass

import numpy as np

from modules.errors import AudioFormatMismatch, InvalidWav

WAV_HEADER_SIZE = 44
PCM_FORMAT = 1

_SAMPLE_DTYPES = {8: np.uint8, 16: np.dtype("<i2"), 32: np.dtype("<i4")}


@dataclass(frozen=True)
class WavFormat:
    channels: int
    sample_rate: int
    bits_per_sample: int
    data_size: int = 0

    @property
    def bytes_per_sample(self) -> int:
        return self.bits_per_sample // 8

    @property
    def block_align(self) -> int:
        return self.channels * self.bytes_per_sample

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.block_align

    def same_pcm_layout(self, other: "WavFormat") -> bool:
        return (
            self.channels == other.channels
            and self.sample_rate == other.sample_rate
            and self.bits_per_sample == other.bits_per_sample
        )


def read_wav_header(buf: bytes) -> WavFormat:
    """Read the canonical 44-byte RIFF/WAVE header.

    Extra chunks before ``data`` are not looked for.
    """
    if len(buf) < WAV_HEADER_SIZE:
        raise InvalidWav(f"WAV buffer too short: {len(buf)} bytes")
    if buf[0:4] != b"RIFF" or buf[8:12] != b"WAVE":
        raise InvalidWav("Buffer is not a RIFF/WAVE file")
    (channels,) = struct.unpack_from("<H", buf, 22)
    (sample_rate,) = struct.unpack_from("<I", buf, 24)
    (bits_per_sample,) = struct.unpack_from("<H", buf, 34)
    (data_size,) = struct.unpack_from("<I", buf, 40)
    if channels == 0 or sample_rate == 0 or bits_per_sample == 0:
        raise InvalidWav(
            f"Unsupported WAV format: channels={channels} rate={sample_rate} bits={bits_per_sample}"
        )
    return WavFormat(
        channels=channels,
        sample_rate=sample_rate,
        bits_per_sample=bits_per_sample,
        data_size=data_size,
    )


def extract_pcm(buf: bytes, fmt: WavFormat | None = None) -> bytes:
    fmt = fmt or read_wav_header(buf)
    return bytes(buf[WAV_HEADER_SIZE : WAV_HEADER_SIZE + fmt.data_size])


def build_wav_header(fmt: WavFormat, data_size: int) -> bytes:
    return b"".join(
        [
            b"RIFF",
            struct.pack("<I", WAV_HEADER_SIZE + data_size - 8),
            b"WAVE",
            b"fmt ",
            struct.pack(
                "<IHHIIHH",
                16,
                PCM_FORMAT,
                fmt.channels,
                fmt.sample_rate,
                fmt.byte_rate,
                fmt.block_align,
                fmt.bits_per_sample,
            ),
            b"data",
            struct.pack("<I", data_size),
        ]
    )


def combine_wav_buffers(buffers: list[bytes]) -> bytes:
    """Concatenate the PCM payloads of ``buffers`` under one fresh header.

    All inputs must share the first buffer's channel count, sample rate and
    bit depth; nothing is resampled.
    """
    if not buffers:
        raise ValueError("No audio buffers to combine")

    first = read_wav_header(buffers[0])
    payloads: list[bytes] = []
    for idx, buf in enumerate(buffers):
        fmt = first if idx == 0 else read_wav_header(buf)
        if not fmt.same_pcm_layout(first):
            raise AudioFormatMismatch(
                f"Segment {idx + 1} format {fmt.channels}ch/{fmt.sample_rate}Hz/{fmt.bits_per_sample}bit "
                f"does not match {first.channels}ch/{first.sample_rate}Hz/{first.bits_per_sample}bit"
            )
        payloads.append(extract_pcm(buf, fmt))

    data = b"".join(payloads)
    return build_wav_header(first, len(data)) + data


def estimate_duration_seconds(payload_bytes: int, fmt: WavFormat) -> int:
    bytes_per_second = fmt.sample_rate * fmt.bytes_per_sample * fmt.channels
    if bytes_per_second <= 0:
        return 0
    return int(round(payload_bytes / bytes_per_second))


def wav_duration_seconds(buf: bytes) -> int:
    fmt = read_wav_header(buf)
    return estimate_duration_seconds(fmt.data_size, fmt)


def silent_wav(
    seconds: float,
    *,
    sample_rate: int = 44100,
    channels: int = 1,
    bits_per_sample: int = 16,
) -> bytes:
    dtype = _SAMPLE_DTYPES.get(bits_per_sample)
    if dtype is None:
        raise ValueError(f"Unsupported bit depth for silence: {bits_per_sample}")
    num_samples = int(round(sample_rate * seconds)) * channels
    # Unsigned 8-bit PCM is centred on 128.
    fill = 128 if bits_per_sample == 8 else 0
    data = np.full(num_samples, fill, dtype=dtype).tobytes()
    fmt = WavFormat(channels=channels, sample_rate=sample_rate, bits_per_sample=bits_per_sample)
    return build_wav_header(fmt, len(data)) + data
