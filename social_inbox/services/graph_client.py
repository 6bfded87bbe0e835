import json
from pathlib import Path
from typing import Optional

import httpx

from social_inbox.config import settings
from social_inbox.logging_config import get_logger
from social_inbox.services.errors import UpstreamError, ValidationError

logger = get_logger("graph_client")

ATTACHMENT_TYPES = ("image", "video", "file")


class MetaGraphClient:
    """Messenger / Instagram messaging calls against the Meta Graph API."""

    def __init__(
        self,
        base_url: str | None = None,
        version: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.graph_api_base_url).rstrip("/")
        self.version = version or settings.graph_api_version
        self.timeout = timeout if timeout is not None else settings.graph_timeout_seconds
        self._transport = transport

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{self.version}/{path.lstrip('/')}"

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    async def _post(self, path: str, token: str, *, json: Optional[dict] = None, data=None, files=None) -> dict:
        if not token:
            raise UpstreamError("Missing page token")
        url = self._url(path)
        try:
            async with self._client() as client:
                response = await client.post(url, params={"access_token": token}, json=json, data=data, files=files)
                response.raise_for_status()
                return response.json() if response.content else {}
        except ValueError as e:
            logger.error("Graph API returned a non-JSON body", extra={"context": {"path": path, "error": str(e)}})
            raise UpstreamError("Graph API returned an unreadable response") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "Graph API rejected request",
                extra={"context": {"path": path, "status": e.response.status_code, "body": e.response.text[:500]}},
            )
            raise UpstreamError(f"Graph API error {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Graph API transport error", extra={"context": {"path": path, "error": str(e)}})
            raise UpstreamError("Graph API unreachable") from e

    async def _get(self, path: str, params: dict, timeout: float | None = None) -> Optional[dict]:
        try:
            async with self._client(timeout) as client:
                response = await client.get(self._url(path), params=params)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Graph lookup failed", extra={"context": {"path": path, "error": str(e)}})
            return None

    def _messages_path(self, platform: str, page_id: str) -> str:
        if platform == "instagram":
            return f"{page_id}/messages"
        return "me/messages"

    async def send_text(self, platform: str, page_id: str, recipient_id: str, text: str, token: str) -> dict:
        safe_text = (text or "").strip()
        if not safe_text:
            # Graph answers (#100) for empty text.
            raise ValidationError("Refusing to send empty message text")

        body = {"recipient": {"id": recipient_id}, "message": {"text": safe_text}}
        if platform != "instagram":
            body["messaging_type"] = "RESPONSE"
        return await self._post(self._messages_path(platform, page_id), token, json=body)

    async def upload_attachment(self, kind: str, path: str | Path, mime: str, token: str) -> str:
        """Upload a local file to /me/message_attachments and return the reusable attachment id."""
        file_path = Path(path)
        message = {"attachment": {"type": kind, "payload": {"is_reusable": True}}}
        with file_path.open("rb") as handle:
            result = await self._post(
                "me/message_attachments",
                token,
                data={"message": json.dumps(message)},
                files={"filedata": (file_path.name, handle, mime or "application/octet-stream")},
            )
        attachment_id = str(result.get("attachment_id") or "").strip()
        if not attachment_id:
            raise UpstreamError("Graph upload did not return attachment_id")
        return attachment_id

    async def send_attachment_by_id(self, recipient_id: str, kind: str, attachment_id: str, token: str) -> dict:
        body = {
            "messaging_type": "RESPONSE",
            "recipient": {"id": recipient_id},
            "message": {"attachment": {"type": kind, "payload": {"attachment_id": attachment_id}}},
        }
        return await self._post("me/messages", token, json=body)

    async def send_attachment_by_url(self, recipient_id: str, kind: str, url: str, token: str) -> dict:
        safe_url = (url or "").strip()
        if not safe_url:
            raise ValidationError("Missing media url")
        body = {
            "messaging_type": "RESPONSE",
            "recipient": {"id": recipient_id},
            "message": {"attachment": {"type": kind, "payload": {"url": safe_url, "is_reusable": False}}},
        }
        return await self._post("me/messages", token, json=body)

    async def send_instagram_attachment(
        self, ig_business_id: str, recipient_id: str, kind: str, url: str, token: str
    ) -> dict:
        body = {
            "recipient": {"id": recipient_id},
            "message": {"attachment": {"type": kind, "payload": {"url": url}}},
        }
        return await self._post(f"{ig_business_id}/messages", token, json=body)

    async def fetch_facebook_profile(self, psid: str, token: str) -> Optional[dict]:
        if not psid or not token:
            return None
        data = await self._get(psid, {"fields": "first_name,last_name,profile_pic", "access_token": token})
        if not data:
            return None
        full_name = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()
        return {"name": full_name or None, "profile_pic": data.get("profile_pic") or None}

    async def fetch_instagram_profile(self, ig_scoped_id: str, token: str) -> Optional[dict]:
        if not ig_scoped_id or not token:
            return None
        data = await self._get(ig_scoped_id, {"fields": "name,username,profile_pic", "access_token": token})
        if not data:
            return None
        return {
            "name": data.get("name") or None,
            "username": data.get("username") or None,
            "profile_pic": data.get("profile_pic") or None,
        }

    async def fetch_participant_name(
        self, page_id: str, customer_id: str, token: str, max_pages: int = 10, page_size: int = 25
    ) -> Optional[str]:
        """Find a customer's name among the page's conversation participants."""
        if not page_id or not customer_id or not token:
            return None

        after = None
        for _ in range(max_pages):
            params = {"fields": "participants", "limit": page_size, "access_token": token}
            if after:
                params["after"] = after
            data = await self._get(f"{page_id}/conversations", params)
            if not data:
                return None

            for conversation in data.get("data") or []:
                for participant in (conversation.get("participants") or {}).get("data") or []:
                    if str(participant.get("id")) == str(customer_id) and participant.get("name"):
                        return participant["name"]

            next_after = ((data.get("paging") or {}).get("cursors") or {}).get("after")
            if not next_after or next_after == after:
                break
            after = next_after
        return None

    async def fetch_content_type(self, url: str) -> str:
        try:
            async with self._client(timeout=4.0) as client:
                response = await client.head(url, follow_redirects=True)
                if response.status_code >= 400:
                    return ""
                return response.headers.get("content-type", "").split(";")[0].strip()
        except httpx.HTTPError:
            return ""
