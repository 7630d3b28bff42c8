from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from app.core.config import settings
from app.core.errors import ChannelRequestError, ChannelUnavailableError, SessionRestartRequired, TransientChannelError
from app.integrations import session_gateway
from app.integrations.session_gateway import RESTART_REQUIRED, SessionGatewayError
from app.models.tables import Connection
from app.outbox.adapters.base import SendResult
from app.util.ids import new_uuid
from app.util.phone import is_group_jid, normalize_phone

log = logging.getLogger("adapters.session")


@dataclass(frozen=True)
class SessionChannelAdapter:
    connection: Connection
    default_country_code: str = "55"
    kind: str = "session"

    @property
    def instance(self) -> str:
        return self.connection.session_name or self.connection.id

    def _destination(self, to: str) -> str:
        if is_group_jid(to):
            return to
        return normalize_phone(to, default_country_code=self.default_country_code)

    def _ensure_session(self) -> None:
        # Fail fast: a dead session never gets a send attempt.
        if self.connection.status != "CONNECTED":
            raise ChannelUnavailableError(
                f"session {self.instance} is {self.connection.status}",
                detail={"connection_id": self.connection.id, "status": self.connection.status},
            )
        if not settings.REAL_SEND_ENABLED:
            return
        state = self._call(lambda: session_gateway.connection_state(self.instance))
        if state != "open":
            raise ChannelUnavailableError(
                f"session {self.instance} not open (state={state})",
                detail={"connection_id": self.connection.id, "state": state},
            )

    def _call(self, fn):
        try:
            return fn()
        except SessionGatewayError as e:
            detail = {"status_code": e.status_code, "data": e.data}
            if e.status_code == RESTART_REQUIRED:
                raise SessionRestartRequired(str(e), detail=detail) from e
            if e.status_code is None or e.status_code >= 500 or e.status_code == 429:
                raise TransientChannelError(str(e), detail=detail) from e
            if e.status_code == 404:
                # unknown instance on the gateway
                raise ChannelUnavailableError(str(e), detail=detail) from e
            raise ChannelRequestError(str(e), status_code=e.status_code, detail=detail) from e
        except httpx.TimeoutException as e:
            raise TransientChannelError(f"session gateway timeout ({type(e).__name__})") from e
        except httpx.TransportError as e:
            raise TransientChannelError(f"session gateway unreachable: {type(e).__name__}: {e}") from e

    def _result(self, data: dict) -> SendResult:
        key = data.get("key") if isinstance(data.get("key"), dict) else {}
        external_id = key.get("id") or data.get("id")
        if not external_id:
            raise TransientChannelError("session gateway response without message id", detail={"response": data})
        return SendResult(status="SENT", external_id=str(external_id), raw_response={"key": key, "status": data.get("status")})

    def _dry_run(self) -> SendResult:
        return SendResult(status="DRY_RUN_SENT", external_id=f"dry-{new_uuid()}", reason="REAL_SEND_ENABLED=false")

    def send_text(self, *, to: str, body: str) -> SendResult:
        dest = self._destination(to)
        self._ensure_session()
        if not settings.REAL_SEND_ENABLED:
            return self._dry_run()
        return self._result(self._call(lambda: session_gateway.send_text(self.instance, to=dest, text=body)))

    def send_media(
        self, *, to: str, media_type: str, file: str, caption: str | None = None, filename: str | None = None
    ) -> SendResult:
        dest = self._destination(to)
        self._ensure_session()
        if not settings.REAL_SEND_ENABLED:
            return self._dry_run()
        data = self._call(
            lambda: session_gateway.send_media(
                self.instance, to=dest, media_type=media_type, media=file, caption=caption, filename=filename
            )
        )
        return self._result(data)

    def send_template(self, *, to: str, name: str, language: str, components: list[dict]) -> SendResult:
        raise ChannelRequestError(
            "templates are only supported on the official API channel",
            detail={"connection_id": self.connection.id, "template": name},
        )

    def mark_read(self, *, external_id: str, remote: str | None = None) -> None:
        self._ensure_session()
        if not settings.REAL_SEND_ENABLED:
            return
        jid = remote if remote and "@" in remote else f"{self._destination(remote or '')}@s.whatsapp.net"
        self._call(lambda: session_gateway.mark_read(self.instance, remote_jid=jid, message_id=external_id))

    def lookup_lid(self, number: str) -> str | None:
        dest = self._destination(number)
        self._ensure_session()
        if not settings.REAL_SEND_ENABLED:
            return None
        return self._call(lambda: session_gateway.lookup_lid(self.instance, number=dest))

    def restart(self) -> None:
        if not settings.REAL_SEND_ENABLED:
            return
        self._call(lambda: session_gateway.restart(self.instance))
