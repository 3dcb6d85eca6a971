
import asyncio
import logging
import threading
from typing import Optional, Protocol, Sequence

import google.auth
from google.auth.transport.requests import Request
from google.oauth2 import service_account

logger = logging.getLogger(__name__)


CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class CredentialError(Exception):
    """Raised when an access token cannot be obtained."""
    pass


class CredentialProvider(Protocol):
    """Supplies a bearer token for the judge model."""

    async def get_token(self) -> str:
        ...


class StaticTokenProvider:
    """Returns a fixed token, e.g. one injected through the environment."""

    def __init__(self, token: Optional[str]):
        self._token = token

    async def get_token(self) -> str:
        if not self._token:
            raise CredentialError("No access token configured")
        return self._token


class GoogleServiceAccountCredentialProvider:
    """
    Google Cloud access tokens from a service account key file.

    Falls back to application-default credentials when no key file is
    given. Credentials are loaded lazily and refreshed under a lock, so a
    single instance can be shared by concurrent reviews.
    """

    def __init__(
        self,
        credentials_path: Optional[str] = None,
        scopes: Sequence[str] = (CLOUD_PLATFORM_SCOPE,),
    ):
        self.credentials_path = credentials_path
        self.scopes = list(scopes)
        self._credentials = None
        self._lock = threading.Lock()

    def _load_credentials(self):
        if self.credentials_path:
            logger.info(f"Loading service account credentials from {self.credentials_path}")
            return service_account.Credentials.from_service_account_file(
                self.credentials_path,
                scopes=self.scopes,
            )

        logger.info("Loading application default credentials")
        credentials, _ = google.auth.default(scopes=self.scopes)
        return credentials

    def _fetch_token(self) -> str:
        with self._lock:
            if self._credentials is None:
                self._credentials = self._load_credentials()
            if not self._credentials.valid:
                self._credentials.refresh(Request())
            token = self._credentials.token

        if not token:
            raise CredentialError("Failed to get access token")
        return token

    async def get_token(self) -> str:
        try:
            return await asyncio.to_thread(self._fetch_token)
        except CredentialError:
            raise
        except Exception as e:
            logger.error(f"Access token acquisition failed: {e}")
            raise CredentialError(f"Failed to get access token: {e}") from e
