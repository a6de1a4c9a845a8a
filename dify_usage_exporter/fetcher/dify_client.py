"""
Dify Console Client
===================
Reads apps, token costs and LLM node executions from the Dify console API.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from dify_usage_exporter import __version__
from dify_usage_exporter.errors import FetchError
from dify_usage_exporter.schemas.usage import RawModelUsageRecord

logger = structlog.get_logger()

PAGE_SIZE = 100
WORKFLOW_APP_MODES = frozenset({"workflow", "advanced-chat", "agent-chat"})


class DifyApp(BaseModel):
    id: str
    name: str = ""
    mode: str = ""


class TokenCostRow(BaseModel):
    date: str
    token_count: int = 0
    total_price: Decimal = Decimal("0")
    currency: str = "USD"


@dataclass
class ConsoleSession:
    """Console access token obtained by login."""

    access_token: str


class _TransientError(Exception):
    """Network failure, 5xx or 429 from the console API."""


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, _TransientError)


def _day_of(timestamp: Optional[float]) -> str:
    if not timestamp:
        return datetime.now(timezone.utc).date().isoformat()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()


def extract_model_usage(
    node: dict[str, Any], app: DifyApp
) -> Optional[RawModelUsageRecord]:
    """Usage row of one LLM node execution, or None for other nodes."""
    if node.get("node_type") != "llm":
        return None

    process_data = node.get("process_data") or {}
    usage = process_data.get("usage")
    if not usage:
        return None

    end_user = node.get("created_by_end_user") or {}
    account = node.get("created_by_account") or {}
    if end_user.get("id"):
        user_id, user_type = end_user["id"], "end_user"
    elif account.get("id"):
        user_id, user_type = account["id"], "account"
    else:
        return None

    return RawModelUsageRecord(
        date=_day_of(node.get("created_at")),
        app_id=app.id,
        app_name=app.name,
        user_id=user_id,
        user_type=user_type,
        model_provider=process_data.get("model_provider") or "",
        model_name=process_data.get("model_name") or "",
        prompt_tokens=usage.get("prompt_tokens") or 0,
        completion_tokens=usage.get("completion_tokens") or 0,
        total_tokens=usage.get("total_tokens") or 0,
        prompt_price=float(usage.get("prompt_price") or 0),
        completion_price=float(usage.get("completion_price") or 0),
        total_price=float(usage.get("total_price") or 0),
        currency=usage.get("currency") or "USD",
    )


class DifyConsoleClient:
    """
    Dify console API client.

    Logs in with email/password and keeps the access token private to this
    instance. A 401 triggers one re-login. Network errors, 5xx and 429 are
    retried with exponential backoff.
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        password: str,
        timeout: float = 30.0,
        retry_count: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._email = email
        self._password = password
        self._retry_count = retry_count
        self._session: Optional[ConsoleSession] = None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Content-Type": "application/json",
                "User-Agent": f"dify-usage-exporter/{__version__}",
            },
            transport=transport,
        )

    async def login(self) -> ConsoleSession:
        response = await self._send(
            "POST",
            "/console/api/login",
            json={"email": self._email, "password": self._password, "remember_me": True},
        )
        if response.status_code != 200:
            raise FetchError(f"Dify login failed: HTTP {response.status_code}")

        try:
            token = (response.json().get("data") or {}).get("access_token")
        except (ValueError, AttributeError) as e:
            raise FetchError(f"Dify login returned an invalid body: {e}") from e
        if not token:
            raise FetchError("Dify login response did not include an access token")

        self._session = ConsoleSession(access_token=token)
        logger.info("Logged in to Dify console")
        return self._session

    async def fetch_apps(self) -> list[DifyApp]:
        apps: list[DifyApp] = []
        page = 1
        while True:
            body = await self._get_json("/console/api/apps", {"page": page, "limit": PAGE_SIZE})
            apps.extend(DifyApp.model_validate(item) for item in body.get("data", []))
            if not body.get("has_more"):
                break
            page += 1

        logger.info("Fetched apps", count=len(apps))
        return apps

    async def fetch_app_token_costs(self, app_id: str, start: date, end: date) -> list[TokenCostRow]:
        body = await self._get_json(
            f"/console/api/apps/{app_id}/statistics/token-costs",
            {"start": f"{start.isoformat()} 00:00", "end": f"{end.isoformat()} 23:59"},
        )
        return [TokenCostRow.model_validate(row) for row in body.get("data", [])]

    async def fetch_workflow_runs(self, app_id: str, start: date, end: date) -> list[dict[str, Any]]:
        start_ts = datetime.combine(start, datetime.min.time(), tzinfo=timezone.utc).timestamp()
        end_ts = datetime.combine(end, datetime.max.time(), tzinfo=timezone.utc).timestamp()

        runs: list[dict[str, Any]] = []
        last_id: Optional[str] = None
        while True:
            params: dict[str, Any] = {"limit": PAGE_SIZE}
            if last_id:
                params["last_id"] = last_id
            body = await self._get_json(f"/console/api/apps/{app_id}/workflow-runs", params)
            page = body.get("data", [])

            for run in page:
                created_at = run.get("created_at") or 0
                if start_ts <= created_at <= end_ts:
                    runs.append(run)

            if not page or not body.get("has_more"):
                break
            # runs are returned newest first
            if (page[-1].get("created_at") or 0) < start_ts:
                break
            last_id = page[-1].get("id")

        return runs

    async def fetch_node_executions(self, app_id: str, run_id: str) -> list[dict[str, Any]]:
        body = await self._get_json(
            f"/console/api/apps/{app_id}/workflow-runs/{run_id}/node-executions", None
        )
        return body.get("data", [])

    async def fetch_model_usage(self, start: date, end: date) -> list[RawModelUsageRecord]:
        """
        LLM usage rows for every workflow-style app in [start, end].

        Failures for a single app or run are logged and skipped.
        """
        records: list[RawModelUsageRecord] = []
        apps = [app for app in await self.fetch_apps() if app.mode in WORKFLOW_APP_MODES]

        for app in apps:
            try:
                runs = await self.fetch_workflow_runs(app.id, start, end)
            except FetchError as e:
                logger.warning("Failed to fetch workflow runs", app_id=app.id, error=str(e))
                continue

            for run in runs:
                run_id = run.get("id")
                if not run_id:
                    logger.warning("Skipping workflow run without id", app_id=app.id)
                    continue
                try:
                    nodes = await self.fetch_node_executions(app.id, run_id)
                except FetchError as e:
                    logger.warning(
                        "Failed to fetch node executions",
                        app_id=app.id,
                        run_id=run_id,
                        error=str(e),
                    )
                    continue
                for node in nodes:
                    try:
                        record = extract_model_usage(node, app)
                    except (ValueError, TypeError, AttributeError) as e:
                        logger.warning(
                            "Skipping malformed node execution",
                            app_id=app.id,
                            run_id=run_id,
                            node_id=node.get("id") if isinstance(node, dict) else None,
                            error=str(e),
                        )
                        continue
                    if record is not None:
                        records.append(record)

        logger.info(
            "Fetched model usage",
            start=start.isoformat(),
            end=end.isoformat(),
            apps=len(apps),
            records=len(records),
        )
        return records

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_json(self, path: str, params: Optional[dict[str, Any]]) -> dict[str, Any]:
        if self._session is None:
            await self.login()

        response = await self._send("GET", path, params=params)
        if response.status_code == 401:
            logger.info("Console session expired, logging in again")
            await self.login()
            response = await self._send("GET", path, params=params)

        if response.status_code != 200:
            raise FetchError(f"GET {path} failed: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as e:
            raise FetchError(f"GET {path} returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise FetchError(f"GET {path} returned an unexpected body")
        return body

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {}
        if self._session is not None:
            headers["Authorization"] = f"Bearer {self._session.access_token}"

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_count + 1),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    try:
                        response = await self._client.request(method, path, headers=headers, **kwargs)
                    except httpx.TransportError as e:
                        raise _TransientError(str(e)) from e
                    if response.status_code == 429 or response.status_code >= 500:
                        raise _TransientError(f"HTTP {response.status_code}")
        except _TransientError as e:
            logger.error("Dify API request failed", method=method, path=path, error=str(e))
            raise FetchError(f"{method} {path} failed: {e}") from e

        logger.debug("Dify API response", method=method, path=path, status=response.status_code)
        return response
