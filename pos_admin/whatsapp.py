from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from . import config


logger = logging.getLogger(__name__)


class WhatsAppError(RuntimeError):
    pass


def _error_message(res: requests.Response, default: str) -> str:
    try:
        data = res.json()
    except ValueError:
        return default
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return default


class WhatsAppClient:
    """Client for the WhatsApp gateway that delivers invoice links."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        country_code: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.whatsapp_api_base_url()).rstrip("/")
        self.country_code = config.whatsapp_country_code() if country_code is None else country_code
        self.timeout = config.whatsapp_timeout() if timeout is None else timeout
        self.session = session or requests.Session()

    def recipient(self, phone: str) -> str:
        return f"{self.country_code}{str(phone or '').strip()}"

    def send_image_url(self, phone: str, media_url: str, caption: str, token: str) -> Dict[str, Any]:
        if not token:
            raise WhatsAppError("WhatsApp token not loaded. Cannot send message.")
        payload = {
            "token": token,
            "number": self.recipient(phone),
            "imageUrl": media_url,
            "caption": caption,
        }
        try:
            res = self.session.post(f"{self.base_url}/send-image-url", json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise WhatsAppError(f"Failed to send WhatsApp message: {exc}") from exc
        if not res.ok:
            raise WhatsAppError(_error_message(res, "Failed to send WhatsApp message."))
        try:
            return res.json()
        except ValueError:
            return {}

    def _get(self, route: str, token: str) -> Dict[str, Any]:
        try:
            res = self.session.get(f"{self.base_url}/{route}/{quote(token, safe='')}", timeout=self.timeout)
        except requests.RequestException as exc:
            raise WhatsAppError(f"WhatsApp gateway unreachable: {exc}") from exc
        if not res.ok:
            raise WhatsAppError(_error_message(res, f"WhatsApp gateway returned {res.status_code}."))
        try:
            data = res.json()
        except ValueError as exc:
            raise WhatsAppError("Invalid response from server.") from exc
        if not isinstance(data, dict):
            raise WhatsAppError("Invalid response from server.")
        return data

    def status(self, token: str) -> bool:
        data = self._get("status", token)
        if "authenticated" in data:
            return bool(data["authenticated"])
        if "status" in data:
            return data["status"] == "authenticated"
        raise WhatsAppError("Unexpected response from server.")

    def qr(self, token: str) -> Optional[str]:
        """QR code to scan, or None when the session is already authenticated."""
        data = self._get("qr", token)
        if "message" in data:
            if data["message"] == "Already authenticated.":
                return None
            raise WhatsAppError("Unexpected message from server.")
        if "qr" in data:
            return data["qr"]
        raise WhatsAppError("Invalid response from server.")

    def session_state(self, token: str) -> Dict[str, Any]:
        if not token:
            raise WhatsAppError("Token not found in the database.")
        if self.status(token):
            return {"authenticated": True, "qr": None}
        code = self.qr(token)
        return {"authenticated": code is None, "qr": code}
