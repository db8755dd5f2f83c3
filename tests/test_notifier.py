from __future__ import annotations

import requests

from fakes import run
from notifier import TelegramNotifier


class RecordingNotifier(TelegramNotifier):
    def __init__(self, *args, error: Exception | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.error = error
        self.posted: list[str] = []

    def _post(self, msg: str):
        if self.error is not None:
            raise self.error
        self.posted.append(msg)


def test_disabled_without_credentials() -> None:
    notifier = RecordingNotifier("", "123")

    assert notifier.enabled is False
    assert run(notifier.send("hello")) is False
    assert notifier.posted == []


def test_duplicate_errors_are_suppressed_within_cooldown() -> None:
    now = [1000.0]
    notifier = RecordingNotifier("token", "123", cooldown=300, clock=lambda: now[0])

    assert run(notifier.send("❌ pool A failed", is_error=True)) is True
    now[0] = 1200.0
    assert run(notifier.send("❌ pool A failed", is_error=True)) is False
    assert run(notifier.send("❌ pool B failed", is_error=True)) is True
    now[0] = 1301.0
    assert run(notifier.send("❌ pool A failed", is_error=True)) is True

    assert notifier.posted == ["❌ pool A failed", "❌ pool B failed", "❌ pool A failed"]


def test_success_messages_are_never_throttled() -> None:
    notifier = RecordingNotifier("token", "123", clock=lambda: 0.0)

    run(notifier.send("✅ kicked"))
    run(notifier.send("✅ kicked"))

    assert len(notifier.posted) == 2


def test_http_failure_is_reported_not_raised() -> None:
    notifier = RecordingNotifier("token", "123", error=requests.ConnectionError("offline"))

    assert run(notifier.send("✅ kicked")) is False
