"""
HTTP client for the property backend (projects, media, slots, visits, phone verification).
Tools call it through the shared instance from get_backend_client().
"""

import os
from typing import Any, Dict, Optional
import httpx
import structlog

logger = structlog.get_logger()

PROPERTY_BACKEND_URL = os.getenv("PROPERTY_BACKEND_URL", "http://localhost:54321/functions/v1")
PROPERTY_BACKEND_API_KEY = os.getenv("PROPERTY_BACKEND_API_KEY", "")
PROPERTY_BACKEND_TIMEOUT = float(os.getenv("PROPERTY_BACKEND_TIMEOUT", "15"))

# Identifies this channel to the backend
PLATFORM = "WebChat"
CHAT_MODE = "voice"


class PropertyBackendClient:
    def __init__(
        self,
        base_url: str = PROPERTY_BACKEND_URL,
        api_key: str = PROPERTY_BACKEND_API_KEY,
        timeout: float = PROPERTY_BACKEND_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http

    async def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST JSON and return the decoded body. Raises httpx.HTTPError on failure."""
        http = await self._get_http()
        body = {"platform": PLATFORM, "chat_mode": CHAT_MODE, **payload}
        response = await http.post(f"/{path.lstrip('/')}", json=body)
        response.raise_for_status()
        data = response.json()
        logger.debug("property_backend_call", path=path, status=response.status_code)
        return data if isinstance(data, dict) else {"data": data}

    async def send_otp(self, phone_number: str, name: str, **context: Any) -> Dict[str, Any]:
        return await self.post("phone-auth", {"action": "send_otp", "phone_number": phone_number, "name": name, **context})

    async def verify_otp(self, phone_number: str, otp: str, **context: Any) -> Dict[str, Any]:
        return await self.post("phone-auth", {"action": "verify_otp", "phone_number": phone_number, "otp": otp, **context})

    async def get_project_details(self, project_name: Optional[str] = None, **context: Any) -> Dict[str, Any]:
        return await self.post("project-details", {"project_name": project_name, **context})

    async def get_property_media(self, kind: str, project_name: Optional[str], **context: Any) -> Dict[str, Any]:
        return await self.post("property-media", {"kind": kind, "project_name": project_name, **context})

    async def get_available_slots(self, property_id: Optional[str], **context: Any) -> Dict[str, Any]:
        return await self.post("available-slots", {"property_id": property_id, **context})

    async def schedule_visit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post("schedule-visit", payload)

    async def close(self):
        if self._http is not None:
            await self._http.aclose()
            self._http = None


_backend_client: Optional[PropertyBackendClient] = None


def get_backend_client() -> PropertyBackendClient:
    global _backend_client
    if _backend_client is None:
        _backend_client = PropertyBackendClient()
    return _backend_client


def set_backend_client(client: Optional[PropertyBackendClient]) -> None:
    """Replace the shared client (tests, alternate deployments)."""
    global _backend_client
    _backend_client = client


async def close_backend_client():
    global _backend_client
    if _backend_client is not None:
        await _backend_client.close()
        _backend_client = None
