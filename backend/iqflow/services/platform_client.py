# /iqflow/services/platform_client.py

import logging
import time
from typing import Any, Dict, List, Optional

import httpx
import tenacity

from iqflow.config.settings import settings
from iqflow.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from iqflow.utils.metrics import platform_call_histogram
from iqflow.workflows.errors import RemoteCallError

# Client for the platform endpoints invoked by onboarding actions. Every call
# either returns the decoded JSON body or raises RemoteCallError; the action
# dispatcher decides per action whether that is fatal.

logger = logging.getLogger(__name__)


class PlatformClient:
    def __init__(self, base_url: str = settings.platform_api_url, timeout: float = settings.platform_api_timeout, http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker("platform")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(settings.platform_api_retries),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Sends one request and returns the JSON body, raising RemoteCallError on any rejection."""
        url = f"{self.base_url}{path}"
        start_time = time.time()
        try:
            response = await self.resilient_api_call(self.http_client.request, method, url, json=payload, params=params)
        except CircuitOpenError as e:
            raise RemoteCallError(path, str(e)) from e
        except httpx.HTTPError as e:
            raise RemoteCallError(path, f"transport error: {e}") from e
        finally:
            platform_call_histogram.labels(endpoint=path).observe(time.time() - start_time)

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = body.get("error") if isinstance(body, dict) else None
            raise RemoteCallError(path, message or f"HTTP {response.status_code}", status_code=response.status_code)
        if not isinstance(body, dict):
            return {"data": body}
        if body.get("success") is False:
            raise RemoteCallError(path, body.get("error") or "request was not successful", status_code=response.status_code)
        return body

    async def close(self):
        await self.http_client.aclose()

    # ---------------- Sessions & auth ---------------- #

    async def create_session(self) -> Dict[str, Any]:
        body = await self.request("POST", "/api/session", {"action": "create"})
        return body.get("session") or {}

    async def transfer_session(self, anon_session_id: str, anon_user_id: Optional[str], authenticated_user_id: str, chat_id: Optional[str]) -> Dict[str, Any]:
        return await self.request("POST", "/api/session", {
            "action": "transfer",
            "anonSessionId": anon_session_id,
            "anonUserId": anon_user_id,
            "authenticatedUserId": authenticated_user_id,
            "chatId": chat_id,
        })

    async def register(self, email: str, session_id: Optional[str], **details: Any) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth", {"action": "register", "email": email, "sessionId": session_id, **details})

    async def verify_otp(self, email: str, otp: str) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth", {"action": "verify-otp", "email": email, "otp": otp})

    async def create_profile(self, email: str, profile_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth", {"action": "create-profile", "email": email, "profileConfig": profile_config or {}})

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth", {"action": "login", "email": email, "password": password})

    async def send_password_reset(self, email: str) -> Dict[str, Any]:
        return await self.request("POST", "/api/auth", {"action": "send-password-reset", "email": email})

    # ---------------- Devices ---------------- #

    async def spawn_device(self, profile_key: str, mode: str, session_id: Optional[str] = None, session_expiry: Optional[str] = None, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("POST", "/api/device", {
            "action": "spawn",
            "profileKey": profile_key,
            "mode": mode,
            "sessionId": session_id,
            "sessionExpiry": session_expiry,
            "config": config or {},
        })

    async def validate_schema(self, device_id: Optional[str], sample: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", "/api/v2/ingest/validate-schema", {"deviceId": device_id, "sample": sample})

    # ---------------- Users, notifications, tickets ---------------- #

    async def invite_users(self, users: List[Dict[str, str]]) -> Dict[str, Any]:
        return await self.request("POST", "/api/v2/user/invite", {"users": users})

    async def get_current_user(self) -> Dict[str, Any]:
        return await self.request("GET", "/api/v2/user/me")

    async def subscribe_notifications(self, email: Optional[str], device_id: Optional[str], channel: str = "email") -> Dict[str, Any]:
        return await self.request("POST", "/api/v2/notifications/subscribe", {"channel": channel, "email": email, "deviceId": device_id})

    async def generate_sample_ticket(self, severity: str = "medium") -> Dict[str, Any]:
        return await self.request("POST", "/api/v2/tickets/generate-sample", {"severity": severity})

    async def list_tickets(self, page_size: int = 5) -> List[Dict[str, Any]]:
        body = await self.request("GET", "/api/tickets", params={"pageSize": page_size})
        return body.get("tickets") or []

    async def update_ticket(self, ticket_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Patches one ticket by its related id (e.g. "T-1044"). An unknown id is a 404."""
        body = await self.request("POST", "/api/tickets", {"action": "update", "id": ticket_id, "updates": updates})
        return body.get("ticket") or {}

    async def get_collaborators(self) -> List[Dict[str, Any]]:
        body = await self.request("GET", "/api/state")
        return (body.get("state") or {}).get("collaborators") or []

    # ---------------- Dashboard & analytics ---------------- #

    async def switch_channel(self, device_id: Optional[str], to: str) -> Dict[str, Any]:
        return await self.request("POST", "/api/v2/dashboard/switch-channel", {"deviceId": device_id, "to": to})

    async def query_metrics(self, device_id: Optional[str], metric: str, window: str = "7d") -> Dict[str, Any]:
        return await self.request("GET", "/api/v2/metrics/query", params={"deviceId": device_id, "metric": metric, "window": window})

    async def compute_correlation(self, device_id: Optional[str], metrics: List[str]) -> Dict[str, Any]:
        return await self.request("POST", "/api/v2/metrics/correlation", {"deviceId": device_id, "metrics": metrics})

    async def forecast_maintenance(self, device_id: Optional[str], horizon_days: int = 30) -> Dict[str, Any]:
        return await self.request("POST", "/api/v2/forecast/maintenance", {"deviceId": device_id, "horizonDays": horizon_days})

    async def explain_health_drivers(self, device_id: Optional[str]) -> Dict[str, Any]:
        return await self.request("GET", "/api/v2/health/drivers", params={"deviceId": device_id})

    async def compare_devices(self, device_ids: List[str], metric: str = "vibration") -> Dict[str, Any]:
        return await self.request("POST", "/api/v2/compare/devices", {"deviceIds": device_ids, "metric": metric})
