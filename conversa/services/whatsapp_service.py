from typing import Any, Optional

import httpx

from conversa.config import settings
from conversa.logging_config import get_logger
from conversa.services.result import Result

logger = get_logger("whatsapp_service")


class TransportError(Exception):
    """Raised by job bodies when a transport call failed and the job should be retried."""


class WhatsAppService:
    """Client for the WhatsApp Cloud API, bound to one sending account."""

    def __init__(self, phone_number_id: str, access_token: str):
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.base_url = f"{settings.whatsapp_api_url.rstrip('/')}/{settings.whatsapp_api_version}"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _make_request(self, method: str, path: str, data: Optional[dict] = None) -> Result[dict]:
        """Make request to the Graph API."""
        url = f"{self.base_url}/{path}"
        try:
            with httpx.Client(timeout=settings.whatsapp_timeout_seconds) as client:
                response = client.request(method, url, headers=self._headers(), json=data)
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp API error: {e}", extra={"context": {"path": path}})
            return Result.failure(str(e), "transport_error")

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if response.status_code >= 400:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            message = error.get("message") or f"HTTP {response.status_code}"
            logger.warning(
                f"WhatsApp API rejected request: {message}",
                extra={"context": {"path": path, "status_code": response.status_code, "code": error.get("code")}},
            )
            return Result.failure(message, "transport_rejected")
        return Result.success(body)

    def _send(self, to: str, message: dict) -> Result[str]:
        payload = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to, **message}
        result = self._make_request("POST", f"{self.phone_number_id}/messages", payload)
        if not result.ok:
            return Result.failure(result.error, result.error_code)
        messages = result.value.get("messages") or []
        if not messages or not messages[0].get("id"):
            return Result.failure("Transport response without message id", "transport_error")
        return Result.success(messages[0]["id"])

    def send_text(self, to: str, body: str) -> Result[str]:
        return self._send(to, {"type": "text", "text": {"preview_url": False, "body": body}})

    def send_audio(self, to: str, audio_url: str) -> Result[str]:
        return self._send(to, {"type": "audio", "audio": {"link": audio_url}})

    def send_template(
        self,
        to: str,
        template_name: str,
        language: str,
        parameters: Optional[dict] = None,
    ) -> Result[str]:
        """Send an approved template. parameters: {"header": [...], "body": [...]} component parameter lists."""
        components = []
        parameters = parameters or {}
        if parameters.get("header"):
            components.append({"type": "header", "parameters": parameters["header"]})
        if parameters.get("body"):
            components.append({"type": "body", "parameters": parameters["body"]})

        template: dict[str, Any] = {"name": template_name, "language": {"code": language}}
        if components:
            template["components"] = components
        return self._send(to, {"type": "template", "template": template})

    def send_interactive_form(
        self,
        to: str,
        body: str,
        *,
        flow_id: str,
        flow_cta: str,
        flow_token: str,
        screen: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> Result[str]:
        """Send a WhatsApp Flow (multi-field form)."""
        parameters: dict[str, Any] = {
            "flow_message_version": "3",
            "flow_token": flow_token,
            "flow_id": flow_id,
            "flow_cta": flow_cta,
            "flow_action": "navigate",
        }
        if screen:
            parameters["flow_action_payload"] = {"screen": screen, "data": data or {}}
        interactive = {
            "type": "flow",
            "body": {"text": body},
            "action": {"name": "flow", "parameters": parameters},
        }
        return self._send(to, {"type": "interactive", "interactive": interactive})

    def mark_read(self, external_id: str) -> Result[bool]:
        result = self._make_request(
            "POST",
            f"{self.phone_number_id}/messages",
            {"messaging_product": "whatsapp", "status": "read", "message_id": external_id},
        )
        return result.map(lambda body: bool(body.get("success")))

    def get_media_info(self, media_id: str) -> Result[dict]:
        """Resolve a media id to {url, mime_type, sha256, file_size}."""
        return self._make_request("GET", media_id)

    def download_media(self, url: str) -> Result[bytes]:
        try:
            with httpx.Client(timeout=settings.whatsapp_timeout_seconds, follow_redirects=True) as client:
                response = client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp media download error: {e}")
            return Result.failure(str(e), "transport_error")
        if response.status_code != 200:
            return Result.failure(f"HTTP {response.status_code}", "transport_rejected")
        return Result.success(response.content)


def for_account(account) -> WhatsAppService:
    return WhatsAppService(account.phone_number_id, account.access_token or "")
