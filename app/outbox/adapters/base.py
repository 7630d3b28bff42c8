from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class SendResult:
    status: str  # SENT | DRY_RUN_SENT
    external_id: str | None = None
    raw_response: dict | None = None
    reason: str | None = None


class ChannelAdapter(Protocol):
    """Uniform send capability over the session and official channels.

    Implementations normalize the destination number themselves and raise
    app.core.errors.DispatchError subclasses on failure.
    """

    kind: str

    def send_text(self, *, to: str, body: str) -> SendResult: ...

    def send_media(
        self, *, to: str, media_type: str, file: str, caption: str | None = None, filename: str | None = None
    ) -> SendResult: ...

    def send_template(self, *, to: str, name: str, language: str, components: list[dict]) -> SendResult: ...

    def mark_read(self, *, external_id: str, remote: str | None = None) -> None: ...
