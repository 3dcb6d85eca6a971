
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class SupabaseRestError(Exception):
    """Raised when a PostgREST request fails or returns an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SupabaseRest:
    """
    Client for the Supabase REST (PostgREST) API.

    Covers the table operations the review pipeline needs: select, upsert
    and conditional update, authenticated with the service role key.
    """

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = f"{base_url.rstrip('/')}/rest/v1"
        self.service_role_key = service_role_key
        self.timeout = timeout
        self._http_client = http_client

    def _get_headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        """
        Send a request against a table and return the decoded body.

        Returns:
            Parsed JSON rows, or None for empty (return=minimal) responses

        Raises:
            SupabaseRestError: Transport failure or an error status code
        """
        url = f"{self.base_url}/{table}"
        headers = self._get_headers(prefer)

        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method, url, params=params, json=json, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Supabase {method} {table} failed: {e}")
            raise SupabaseRestError(f"{method} {table} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Supabase {method} {table} returned {response.status_code}: {response.text}")
            raise SupabaseRestError(
                f"{method} {table} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        return response.json()

    async def select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        rows = await self.request("GET", table, params=params)
        return rows or []


def in_filter(values: List[str]) -> str:
    """PostgREST `in.(...)` filter with each value double-quoted."""
    quoted = ",".join('"' + value.replace('"', '\\"') + '"' for value in values)
    return f"in.({quoted})"
