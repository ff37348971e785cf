from __future__ import annotations

from tripsync._redact import redact_for_log


def test_redact_for_log_hides_credentials_and_coordinates() -> None:
    payload = {
        "action": "batch-positions",
        "Authorization": "Bearer abc",
        "token": "secret",
        "positions": [{"ride_id": "42", "lat": 33.57, "lng": -7.59, "speed": 4.2}],
    }

    redacted = redact_for_log(payload)
    assert redacted["action"] == "batch-positions"
    assert redacted["Authorization"] == "<redacted>"
    assert redacted["token"] == "<redacted>"
    position = redacted["positions"][0]
    assert position["lat"] == "<redacted>"
    assert position["lng"] == "<redacted>"
    assert position["ride_id"] == "42"
    assert position["speed"] == 4.2


def test_redact_for_log_truncates_long_lists() -> None:
    redacted = redact_for_log(list(range(30)), max_items=5)
    assert redacted == [0, 1, 2, 3, 4, "<+25 more>"]


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]
