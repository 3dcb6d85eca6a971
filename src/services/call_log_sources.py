
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from src.api.schemas.call_log import CallSession
from src.exceptions import PersistenceFailure
from src.services.supabase_rest import SupabaseRest, SupabaseRestError

logger = logging.getLogger(__name__)


class CallLogRepository(ABC):
    """Read access to stored call logs and their telemetry."""

    @abstractmethod
    async def get_call_log(self, call_log_id: str) -> Optional[CallSession]:
        ...

    @abstractmethod
    async def list_recent_call_logs(self, agent_id: str, limit: int) -> List[CallSession]:
        ...

    @abstractmethod
    async def get_telemetry(self, call_log_id: str) -> Optional[List[Dict[str, Any]]]:
        """Per-turn telemetry records ordered by timestamp, or None if unavailable."""


class AgentConfigSource(ABC):
    """Looks up the agent configuration that was active for a call."""

    @abstractmethod
    async def get_agent_config(self, call_log_id: str) -> Optional[Dict[str, Any]]:
        ...


class InMemoryCallLogRepository(CallLogRepository):

    def __init__(
        self,
        call_logs: Optional[List[CallSession]] = None,
        telemetry: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    ):
        self.call_logs: Dict[str, CallSession] = {log.id: log for log in call_logs or []}
        self.telemetry = dict(telemetry or {})

    def add(self, call_log: CallSession, telemetry: Optional[List[Dict[str, Any]]] = None) -> None:
        self.call_logs[call_log.id] = call_log
        if telemetry is not None:
            self.telemetry[call_log.id] = telemetry

    async def get_call_log(self, call_log_id: str) -> Optional[CallSession]:
        return self.call_logs.get(call_log_id)

    async def list_recent_call_logs(self, agent_id: str, limit: int) -> List[CallSession]:
        logs = [log for log in self.call_logs.values() if log.agent_id == agent_id]
        logs.sort(key=lambda log: log.call_started_at or "", reverse=True)
        return logs[:limit]

    async def get_telemetry(self, call_log_id: str) -> Optional[List[Dict[str, Any]]]:
        return self.telemetry.get(call_log_id)


class InMemoryAgentConfigSource(AgentConfigSource):

    def __init__(self, configs: Optional[Dict[str, Dict[str, Any]]] = None):
        self.configs = dict(configs or {})

    async def get_agent_config(self, call_log_id: str) -> Optional[Dict[str, Any]]:
        return self.configs.get(call_log_id)


class SupabaseCallLogRepository(CallLogRepository):
    """Call logs and metrics logs stored in Supabase tables."""

    def __init__(
        self,
        client: SupabaseRest,
        call_logs_table: str = "soundflare_call_logs",
        metrics_logs_table: str = "soundflare_metrics_logs",
    ):
        self.client = client
        self.call_logs_table = call_logs_table
        self.metrics_logs_table = metrics_logs_table

    async def get_call_log(self, call_log_id: str) -> Optional[CallSession]:
        try:
            rows = await self.client.select(
                self.call_logs_table,
                {"id": f"eq.{call_log_id}", "select": "*", "limit": "1"},
            )
        except SupabaseRestError as e:
            raise PersistenceFailure(f"Failed to fetch call log {call_log_id}: {e}") from e
        return CallSession.model_validate(rows[0]) if rows else None

    async def list_recent_call_logs(self, agent_id: str, limit: int) -> List[CallSession]:
        try:
            rows = await self.client.select(
                self.call_logs_table,
                {
                    "agent_id": f"eq.{agent_id}",
                    "select": "id,agent_id,call_id,call_started_at",
                    "order": "call_started_at.desc",
                    "limit": str(limit),
                },
            )
        except SupabaseRestError as e:
            raise PersistenceFailure(f"Failed to fetch call logs: {e}") from e
        return [CallSession.model_validate(row) for row in rows]

    async def get_telemetry(self, call_log_id: str) -> Optional[List[Dict[str, Any]]]:
        try:
            return await self.client.select(
                self.metrics_logs_table,
                {
                    "session_id": f"eq.{call_log_id}",
                    "select": "*",
                    "order": "unix_timestamp.asc",
                },
            )
        except SupabaseRestError as e:
            logger.error(f"Failed to fetch telemetry for {call_log_id}: {e}")
            return None


class HttpAgentConfigSource(AgentConfigSource):
    """Agent configuration served by the dashboard's config-by-log-id endpoint."""

    def __init__(self, base_url: str, timeout: float = 30.0, http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def get_agent_config(self, call_log_id: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/api/agent-config-by-log-id/{call_log_id}"

        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch agent config for {call_log_id}: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Agent config not found for log {call_log_id} ({response.status_code})")
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Agent config response for {call_log_id} was not JSON")
            return None

        config = data.get("full_config") if isinstance(data, dict) else None
        return config if isinstance(config, dict) else None
