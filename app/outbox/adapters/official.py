from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from app.core.config import settings
from app.core.errors import ChannelRequestError, ChannelUnavailableError, TransientChannelError
from app.integrations import whatsapp_cloud
from app.integrations.whatsapp_cloud import CloudApiError
from app.models.tables import Connection
from app.outbox.adapters.base import SendResult
from app.util.ids import new_uuid
from app.util.phone import normalize_phone

log = logging.getLogger("adapters.official")

# Cloud API error codes that mean the credentials are unusable.
_AUTH_ERROR_CODES = {0, 190, 200, 10}


@dataclass(frozen=True)
class OfficialApiAdapter:
    connection: Connection
    default_country_code: str = "55"
    kind: str = "official"

    def _credentials(self) -> tuple[str, str]:
        token = self.connection.token
        phone_number_id = self.connection.phone_number_id
        if not token or not phone_number_id:
            raise ChannelUnavailableError(
                f"connection {self.connection.id} has no official API credentials",
                detail={"connection_id": self.connection.id},
            )
        return token, phone_number_id

    def _send(self, message: dict) -> SendResult:
        token, phone_number_id = self._credentials()

        if not settings.REAL_SEND_ENABLED:
            return SendResult(status="DRY_RUN_SENT", external_id=f"dry-{new_uuid()}", reason="REAL_SEND_ENABLED=false")

        data = self._call(lambda: whatsapp_cloud.send_message(token=token, phone_number_id=phone_number_id, message=message))
        msgs = data.get("messages") or []
        external_id = msgs[0].get("id") if msgs and isinstance(msgs[0], dict) else None
        if not external_id:
            raise TransientChannelError("Meta API: response without message id", detail={"response": data})
        return SendResult(status="SENT", external_id=str(external_id), raw_response=data)

    def _call(self, fn):
        try:
            return fn()
        except CloudApiError as e:
            raise _map_error(e) from e
        except httpx.TimeoutException as e:
            raise TransientChannelError(f"Meta API: timeout ({type(e).__name__})") from e
        except httpx.TransportError as e:
            raise TransientChannelError(f"Meta API: transport error {type(e).__name__}: {e}") from e

    def send_text(self, *, to: str, body: str) -> SendResult:
        digits = normalize_phone(to, default_country_code=self.default_country_code)
        return self._send({"to": digits, "type": "text", "text": {"preview_url": False, "body": body}})

    def send_media(
        self, *, to: str, media_type: str, file: str, caption: str | None = None, filename: str | None = None
    ) -> SendResult:
        digits = normalize_phone(to, default_country_code=self.default_country_code)

        if file.startswith(("http://", "https://")):
            media: dict = {"link": file}
        elif settings.REAL_SEND_ENABLED:
            token, phone_number_id = self._credentials()
            media_id = self._call(
                lambda: whatsapp_cloud.upload_media(token=token, phone_number_id=phone_number_id, path=file, filename=filename)
            )
            media = {"id": media_id}
        else:
            media = {"id": "dry-run"}

        if caption and media_type in ("image", "video", "document"):
            media["caption"] = caption
        if filename and media_type == "document":
            media["filename"] = filename

        return self._send({"to": digits, "type": media_type, media_type: media})

    def send_template(self, *, to: str, name: str, language: str, components: list[dict]) -> SendResult:
        digits = normalize_phone(to, default_country_code=self.default_country_code)
        template: dict = {"name": name, "language": {"code": language or settings.DEFAULT_TEMPLATE_LANGUAGE}}
        if components:
            template["components"] = components
        return self._send({"to": digits, "type": "template", "template": template})

    def mark_read(self, *, external_id: str, remote: str | None = None) -> None:
        token, phone_number_id = self._credentials()
        if not settings.REAL_SEND_ENABLED:
            return
        self._call(lambda: whatsapp_cloud.mark_read(token=token, phone_number_id=phone_number_id, message_id=external_id))


def _map_error(e: CloudApiError):
    detail = {"status_code": e.status_code, "error": e.error}
    if e.text and not e.error:
        detail["text"] = e.text[:1000]
    msg = str(e)

    code = e.error.get("code")
    if e.status_code == 429 or e.status_code >= 500:
        return TransientChannelError(msg, detail=detail)
    if e.status_code in (401, 403) or (e.status_code == 400 and code in _AUTH_ERROR_CODES and e.error.get("type") == "OAuthException"):
        return ChannelUnavailableError(msg, detail=detail)
    return ChannelRequestError(msg, status_code=e.status_code, detail=detail)
