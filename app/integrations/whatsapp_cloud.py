from __future__ import annotations

import mimetypes
import os

import httpx

from app.core.config import settings


class CloudApiError(Exception):
    """Non-2xx answer from the Cloud API; keeps the provider error object."""

    def __init__(self, status_code: int, error: dict | None, text: str = ""):
        self.status_code = status_code
        self.error = error or {}
        self.text = text
        super().__init__(f"Meta API: {describe_error(self.error) or text[:200] or status_code}")


def describe_error(error: dict) -> str:
    details = (error.get("error_data") or {}).get("details") if isinstance(error.get("error_data"), dict) else None
    return str(details or error.get("message") or error.get("title") or error.get("detail") or "")


def _base() -> str:
    return f"{settings.OFFICIAL_API_BASE.rstrip('/')}/{settings.OFFICIAL_API_VERSION}"


def _headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _parse(r: httpx.Response) -> dict:
    try:
        data = r.json()
    except ValueError:
        data = None

    if r.status_code >= 400:
        err = data.get("error") if isinstance(data, dict) and isinstance(data.get("error"), dict) else data
        raise CloudApiError(r.status_code, err if isinstance(err, dict) else None, r.text or "")

    return data if isinstance(data, dict) else {}


def send_message(*, token: str, phone_number_id: str, message: dict) -> dict:
    url = f"{_base()}/{phone_number_id}/messages"
    body = {"messaging_product": "whatsapp", "recipient_type": "individual", **message}
    r = httpx.post(url, headers=_headers(token), json=body, timeout=settings.OFFICIAL_API_TIMEOUT_S)
    return _parse(r)


def upload_media(*, token: str, phone_number_id: str, path: str, filename: str | None = None) -> str:
    url = f"{_base()}/{phone_number_id}/media"
    name = filename or os.path.basename(path)
    mime = mimetypes.guess_type(name)[0] or "application/octet-stream"
    with open(path, "rb") as fh:
        r = httpx.post(
            url,
            headers=_headers(token),
            data={"messaging_product": "whatsapp", "type": mime},
            files={"file": (name, fh, mime)},
            timeout=settings.OFFICIAL_API_TIMEOUT_S,
        )
    media_id = _parse(r).get("id")
    if not media_id:
        raise CloudApiError(r.status_code, {"message": "media upload returned no id"})
    return str(media_id)


def mark_read(*, token: str, phone_number_id: str, message_id: str) -> dict:
    url = f"{_base()}/{phone_number_id}/messages"
    body = {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
    r = httpx.post(url, headers=_headers(token), json=body, timeout=settings.OFFICIAL_API_TIMEOUT_S)
    return _parse(r)
