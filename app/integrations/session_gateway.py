from __future__ import annotations

import httpx

from app.core.config import settings

# Gateway status code for "stream errored, restart required".
RESTART_REQUIRED = 515


class SessionGatewayError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, data: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.data = data or {}


def _url(path: str) -> str:
    return f"{settings.SESSION_GATEWAY_URL.rstrip('/')}/{path.lstrip('/')}"


def _headers() -> dict:
    h = {"Content-Type": "application/json"}
    if settings.SESSION_GATEWAY_API_KEY:
        h["apikey"] = settings.SESSION_GATEWAY_API_KEY
    return h


def _parse(r: httpx.Response) -> dict:
    try:
        data = r.json()
    except ValueError:
        raise SessionGatewayError(f"Non-JSON response: status={r.status_code} body={r.text[:200]}", status_code=r.status_code)

    if r.status_code >= 400:
        code = data.get("statusCode") if isinstance(data, dict) else None
        raise SessionGatewayError(
            f"gateway error: status={r.status_code} data={data}",
            status_code=int(code) if isinstance(code, int) else r.status_code,
            data=data if isinstance(data, dict) else {},
        )
    return data if isinstance(data, dict) else {"data": data}


def connection_state(instance: str) -> str:
    r = httpx.get(_url(f"/instance/connectionState/{instance}"), headers=_headers(), timeout=settings.SESSION_GATEWAY_TIMEOUT_S)
    data = _parse(r)
    inst = data.get("instance") if isinstance(data.get("instance"), dict) else data
    return str(inst.get("state") or "close")


def send_text(instance: str, *, to: str, text: str) -> dict:
    r = httpx.post(
        _url(f"/message/sendText/{instance}"),
        headers=_headers(),
        json={"number": to, "text": text},
        timeout=settings.SESSION_GATEWAY_TIMEOUT_S,
    )
    return _parse(r)


def send_media(instance: str, *, to: str, media_type: str, media: str, caption: str | None, filename: str | None) -> dict:
    body = {"number": to, "mediatype": media_type, "media": media}
    if caption:
        body["caption"] = caption
    if filename:
        body["fileName"] = filename
    r = httpx.post(_url(f"/message/sendMedia/{instance}"), headers=_headers(), json=body, timeout=settings.SESSION_GATEWAY_TIMEOUT_S)
    return _parse(r)


def mark_read(instance: str, *, remote_jid: str, message_id: str) -> dict:
    body = {"readMessages": [{"remoteJid": remote_jid, "fromMe": False, "id": message_id}]}
    r = httpx.post(_url(f"/chat/markMessageAsRead/{instance}"), headers=_headers(), json=body, timeout=settings.SESSION_GATEWAY_TIMEOUT_S)
    return _parse(r)


def lookup_lid(instance: str, *, number: str) -> str | None:
    r = httpx.post(
        _url(f"/chat/whatsappNumbers/{instance}"),
        headers=_headers(),
        json={"numbers": [number]},
        timeout=settings.SESSION_GATEWAY_TIMEOUT_S,
    )
    data = _parse(r)
    rows = data.get("data") if isinstance(data.get("data"), list) else []
    for row in rows:
        if isinstance(row, dict) and row.get("exists") and row.get("lid"):
            return str(row["lid"])
    return None


def restart(instance: str) -> dict:
    r = httpx.post(_url(f"/instance/restart/{instance}"), headers=_headers(), json={}, timeout=settings.SESSION_GATEWAY_TIMEOUT_S)
    return _parse(r)
