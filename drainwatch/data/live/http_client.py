from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

import requests

from ... import config


@dataclass(eq=False)
class HttpJsonError(RuntimeError):
    url: str
    status_code: int | None
    message: str
    response_text: str | None = None

    def __str__(self) -> str:
        code = self.status_code if self.status_code is not None else "network"
        return f"HTTP {code} for {self.url}: {self.message}"

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


def auth_headers(token: str | None = None) -> dict:
    token = config.API_TOKEN if token is None else token
    return {"Authorization": f"Bearer {token}"} if token else {}


def _error_message(resp: requests.Response) -> str:
    msg = resp.text
    try:
        payload = resp.json() or {}
    except ValueError:
        return str(msg)[:500]
    if not isinstance(payload, dict):
        return str(msg)[:500]
    msg = payload.get("message") or payload.get("error") or msg
    # Validation responses carry {"errors": {field: [messages]}}
    errors = payload.get("errors")
    if isinstance(errors, dict) and errors:
        details = "; ".join(
            f"{field}: {', '.join(map(str, messages)) if isinstance(messages, list) else messages}"
            for field, messages in errors.items()
        )
        msg = f"{msg} ({details})"
    return str(msg)[:500]


def _decode(url: str, resp: requests.Response) -> dict:
    try:
        payload = resp.json()
    except ValueError as e:
        raise HttpJsonError(url=str(url), status_code=int(resp.status_code), message=f"Invalid JSON response: {e}", response_text=resp.text) from e
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise HttpJsonError(url=str(url), status_code=int(resp.status_code), message="Expected a JSON object", response_text=resp.text)
    return payload


def get_json(
    url: str,
    *,
    timeout_s: float = config.HTTP_TIMEOUT_S,
    headers: Mapping[str, str] | None = None,
) -> dict:
    try:
        resp = requests.get(str(url), headers=dict(headers or {}), timeout=float(timeout_s))
    except requests.RequestException as e:
        raise HttpJsonError(url=str(url), status_code=None, message=str(e)) from e
    if resp.status_code // 100 != 2:
        raise HttpJsonError(url=str(url), status_code=int(resp.status_code), message=_error_message(resp), response_text=resp.text)
    return _decode(url, resp)


def post_json(
    url: str,
    body: Any,
    *,
    timeout_s: float = config.HTTP_TIMEOUT_S,
    headers: Mapping[str, str] | None = None,
) -> dict:
    hdrs = {"Content-Type": "application/json"}
    hdrs.update(dict(headers or {}))
    try:
        resp = requests.post(str(url), data=json.dumps(body), headers=hdrs, timeout=float(timeout_s))
    except requests.RequestException as e:
        raise HttpJsonError(url=str(url), status_code=None, message=str(e)) from e
    if resp.status_code // 100 != 2:
        raise HttpJsonError(url=str(url), status_code=int(resp.status_code), message=_error_message(resp), response_text=resp.text)
    return _decode(url, resp)
