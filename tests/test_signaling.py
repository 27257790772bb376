import json

import pytest

from desk_stream.config import CaptureConfig, Resolution
from desk_stream.errors import MalformedMessage
from desk_stream.signaling import (
    MESSAGE_CLASSES,
    Answer,
    AudioDeviceList,
    ErrorMessage,
    IceCandidateMessage,
    Offer,
    SourceList,
    decode_message,
    encode_message,
)


def test_offer_carries_capture_config_on_the_wire():
    config = CaptureConfig(
        source_type="x11-0",
        audio_source="monitor-1",
        enable_audio=True,
        resolution=Resolution(1280, 720),
        framerate=24,
    )
    payload = json.loads(encode_message(Offer(sdp="v=0", config=config)))
    assert payload["type"] == "offer"
    assert payload["sdp"] == "v=0"
    assert payload["config"] == {
        "source_type": "x11-0",
        "audio_source": "monitor-1",
        "enable_audio": True,
        "enable_microphone_input": False,
        "audio_bitrate": 128000,
        "audio_sample_rate": 48000,
        "resolution": [1280, 720],
        "framerate": 24,
        "use_hardware_encoding": True,
    }


def test_offer_omits_audio_source_when_audio_disabled():
    config = CaptureConfig(audio_source="monitor-1", enable_audio=False)
    payload = json.loads(encode_message(Offer(sdp="v=0", config=config)))
    assert payload["config"]["audio_source"] is None


def test_decode_offer_parses_config():
    raw = json.dumps(
        {
            "type": "offer",
            "sdp": "v=0",
            "config": {"source_type": "test", "resolution": [854, 480], "framerate": 20},
        }
    )
    message = decode_message(raw)
    assert isinstance(message, Offer)
    assert message.config.resolution == Resolution(854, 480)
    assert message.config.framerate == 20


def test_decode_monitors_accepts_type_alias():
    raw = json.dumps(
        {
            "type": "monitors",
            "monitors": [
                {"id": "x11-0", "name": "Main", "type": "screen", "resolution": "1920x1080", "primary": True}
            ],
        }
    )
    message = decode_message(raw)
    assert isinstance(message, SourceList)
    assert message.sources[0].source_type == "screen"
    assert message.sources[0].primary is True


def test_decode_audio_devices_and_error():
    devices = decode_message(
        '{"type":"audio-devices","devices":[{"name":"mic","description":"USB","device_type":"microphone"}]}'
    )
    assert isinstance(devices, AudioDeviceList)
    assert devices.devices[0].device_type == "microphone"

    error = decode_message(b'{"type":"error","message":"boom"}')
    assert error == ErrorMessage("boom")


def test_ice_candidate_accepts_inline_object():
    message = decode_message(
        '{"type":"ice-candidate","candidate":{"candidate":"candidate:1","sdpMid":"0","sdpMLineIndex":0}}'
    )
    assert isinstance(message, IceCandidateMessage)
    assert json.loads(message.candidate)["sdpMid"] == "0"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        '{"type": "hello"}',
        '{"sdp": "v=0"}',
        '{"type": "answer"}',
        '{"type": "monitors", "monitors": "x"}',
        b"\xff\xfe",
    ],
)
def test_decode_rejects_malformed_frames(raw):
    with pytest.raises(MalformedMessage) as excinfo:
        decode_message(raw)
    assert excinfo.value.raw is not None


def test_encode_rejects_foreign_objects():
    with pytest.raises(TypeError):
        encode_message({"type": "answer", "sdp": "x"})  # type: ignore[arg-type]


def test_every_variant_has_a_unique_tag():
    tags = [cls.TYPE for cls in MESSAGE_CLASSES]
    assert len(tags) == len(set(tags))
    assert set(tags) == {"offer", "answer", "ice-candidate", "monitors", "audio-devices", "error"}


def test_answer_decodes():
    assert decode_message('{"type":"answer","sdp":"v=0"}') == Answer("v=0")
