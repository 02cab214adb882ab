"""
BACKEND RESOURCE FETCHER
Typed wrapper over the Flux backend REST API

Every call is time-bounded and returns a FetchResult. Expected failure modes
(network, timeout, non-2xx, ok=false body, malformed body, missing config)
never raise; they come back as a classified FetchError.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import orjson
import structlog

from config.settings import settings
from fluxsync.core.errors import FetchErrorKind, FetchResult, truncate

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Endpoint:
    """Route of a named backend resource"""
    method: str
    path: str
    auth: bool = False


ENDPOINTS: Dict[str, Endpoint] = {
    # Dashboard reads
    "status": Endpoint("GET", "/api/status"),
    "latest_cycle": Endpoint("GET", "/api/cycle/latest"),
    "recent_trades": Endpoint("GET", "/api/trades/recent"),
    "shadow_logs": Endpoint("GET", "/api/shadow/recent"),
    "positions": Endpoint("GET", "/api/positions/active"),
    "daily_pnl": Endpoint("GET", "/api/performance/daily"),
    "performance": Endpoint("GET", "/api/analytics/performance"),
    "system_settings": Endpoint("GET", "/api/settings"),
    # Optimize workspace
    "suggestions": Endpoint("GET", "/api/user/settings/suggestions", auth=True),
    "quick_backtest": Endpoint("GET", "/api/user/backtest/quick", auth=True),
    "trial_backtest": Endpoint("POST", "/api/user/backtest", auth=True),
    "apply_settings": Endpoint("POST", "/api/user/settings", auth=True),
    "suggestion_action": Endpoint("POST", "/api/user/suggestion-action", auth=True),
}


class BackendClient:
    """
    Async client for the Flux backend.

    No caching at this layer; each call is one request. The underlying
    httpx client is created lazily and reused until aclose().
    """

    def __init__(
        self,
        api_base: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout_s: Optional[float] = None,
        connect_timeout_s: Optional[float] = None,
        trading_mode: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        base = api_base if api_base is not None else settings.API_BASE
        self.api_base = (base or "").rstrip("/")
        self.api_token = api_token if api_token is not None else settings.API_TOKEN
        self.timeout_s = timeout_s or settings.REQUEST_TIMEOUT_S
        self.connect_timeout_s = connect_timeout_s or settings.CONNECT_TIMEOUT_S
        self.trading_mode = trading_mode or settings.TRADING_MODE
        self.max_diagnostic_chars = settings.DIAGNOSTIC_MAX_CHARS

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Stats
        self._request_count = 0
        self._error_count = 0
        self._last_error_time: float = 0

    # ========== LIFECYCLE ==========

    async def _ensure_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_base,
                timeout=httpx.Timeout(self.timeout_s, connect=self.connect_timeout_s),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                headers={"User-Agent": settings.USER_AGENT},
                transport=self._transport,
            )
            logger.debug("http_client_created", base_url=self.api_base)
        return self._client

    async def aclose(self) -> None:
        if self._client:
            try:
                await asyncio.wait_for(self._client.aclose(), timeout=2.0)
            except (asyncio.TimeoutError, httpx.HTTPError) as e:
                logger.warning("http_client_close_error", error=str(e)[:50])
        self._client = None

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ========== GENERIC FETCH ==========

    async def fetch(
        self,
        resource: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> FetchResult:
        """Issue one request for a named resource and classify the outcome"""
        endpoint = ENDPOINTS.get(resource)
        if endpoint is None:
            return self._fail(resource, FetchErrorKind.CONFIG, f"unknown resource '{resource}'")
        if not self.api_base:
            return self._fail(resource, FetchErrorKind.CONFIG, "Missing API base URL")

        client = await self._ensure_http_client()
        headers: Dict[str, str] = {}
        if endpoint.auth and self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        self._request_count += 1
        try:
            resp = await asyncio.wait_for(
                client.request(
                    endpoint.method,
                    endpoint.path,
                    params=params or None,
                    json=body,
                    headers=headers,
                ),
                timeout=self.timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._fail(
                resource, FetchErrorKind.TIMEOUT, f"no response within {self.timeout_s:.1f}s"
            )
        except httpx.HTTPError as e:
            return self._fail(resource, FetchErrorKind.NETWORK, f"{type(e).__name__}: {e}")

        if not resp.is_success:
            return self._fail(
                resource,
                FetchErrorKind.HTTP,
                f"{resp.status_code} {resp.reason_phrase} :: {resp.text}",
                status=resp.status_code,
            )

        try:
            payload = orjson.loads(resp.content) if resp.content else None
        except orjson.JSONDecodeError as e:
            return self._fail(
                resource, FetchErrorKind.MALFORMED, f"invalid JSON: {e}", status=resp.status_code
            )

        if not isinstance(payload, dict):
            return self._fail(
                resource,
                FetchErrorKind.MALFORMED,
                f"expected JSON object, got {type(payload).__name__}",
                status=resp.status_code,
            )

        # Absence of ok=true is a failure whatever the HTTP status said
        if payload.get("ok") is not True:
            message = payload.get("error") or "response missing ok=true"
            return self._fail(resource, FetchErrorKind.API, str(message), status=resp.status_code)

        return FetchResult.success(resource, payload)

    def _fail(
        self,
        resource: str,
        kind: FetchErrorKind,
        message: str,
        status: Optional[int] = None,
    ) -> FetchResult:
        self._error_count += 1
        self._last_error_time = time.time()
        message = truncate(message, self.max_diagnostic_chars)
        logger.warning(
            "fetch_failed",
            resource=resource,
            kind=kind.value,
            status=status,
            error=message,
        )
        return FetchResult.failure(resource, kind, message, status=status)

    # ========== DASHBOARD READS ==========

    async def get_status(self) -> FetchResult:
        return await self.fetch("status")

    async def get_latest_cycle(self) -> FetchResult:
        return await self.fetch("latest_cycle")

    async def get_recent_trades(self, limit: int = 10, trading_mode: Optional[str] = None) -> FetchResult:
        return await self.fetch(
            "recent_trades",
            params={"limit": limit, "trading_mode": trading_mode or self.trading_mode},
        )

    async def get_recent_shadow_logs(self, limit: int = 10) -> FetchResult:
        return await self.fetch("shadow_logs", params={"limit": limit})

    async def get_active_positions(self) -> FetchResult:
        return await self.fetch("positions")

    async def get_daily_pnl(self, days: int = 7) -> FetchResult:
        return await self.fetch("daily_pnl", params={"days": days})

    async def get_performance_metrics(self, lookback: int = 30) -> FetchResult:
        return await self.fetch("performance", params={"days": lookback})

    async def get_system_settings(self) -> FetchResult:
        """Live system settings; carries the active preset (profile) id"""
        return await self.fetch("system_settings")

    # ========== OPTIMIZE WORKSPACE ==========

    async def get_suggested_settings(self, lookback: int = 30) -> FetchResult:
        return await self.fetch("suggestions", params={"days": lookback, "strategy": "llm"})

    async def get_quick_backtest(self, lookback: int = 30) -> FetchResult:
        return await self.fetch("quick_backtest", params={"days": lookback, "strategy": "llm"})

    async def run_trial_backtest(
        self,
        settings_map: Dict[str, Any],
        lookback: int = 30,
        is_custom: bool = True,
    ) -> FetchResult:
        """Non-committing what-if run of the given settings"""
        return await self.fetch(
            "trial_backtest",
            body={
                "settings": dict(settings_map),
                "days": lookback,
                "compare_to_current": is_custom,
                "strategy": "llm",
            },
        )

    async def apply_settings(self, partial: Dict[str, Any]) -> FetchResult:
        """Commit a batch of setting values to live configuration"""
        return await self.fetch("apply_settings", body=dict(partial))

    async def log_suggestion_decision(
        self,
        setting_name: str,
        current_value: Any,
        suggested_value: Any,
        decision: str,
    ) -> FetchResult:
        return await self.fetch(
            "suggestion_action",
            body={
                "suggestion_type": setting_name,
                "current_value": current_value,
                "suggested_value": suggested_value,
                "action": decision,
            },
        )

    # ========== STATS ==========

    def get_stats(self) -> Dict[str, Any]:
        return {
            "api_base": self.api_base,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "last_error_time": self._last_error_time,
        }
