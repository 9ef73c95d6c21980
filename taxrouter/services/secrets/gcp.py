from __future__ import annotations

import logging
from typing import Any, Final

from taxrouter.core.errors import SecretUnavailable


logger = logging.getLogger(__name__)


class GcpSecretManagerProvider:
    provider: Final[str] = "gcp_secret_manager"

    def __init__(self, client: Any | None = None) -> None:
        # The SDK client is created on first use so processes without GCP credentials can start.
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from google.cloud import secretmanager

            self._client = secretmanager.SecretManagerServiceAsyncClient()
        return self._client

    async def access(self, name: str) -> bytes:
        from google.api_core.exceptions import GoogleAPICallError, RetryError

        client = self._get_client()
        try:
            response = await client.access_secret_version(request={"name": name})
        except (GoogleAPICallError, RetryError) as exc:
            raise SecretUnavailable(name, type(exc).__name__) from exc
        return bytes(response.payload.data)

    async def close(self) -> None:
        if self._client is None:
            return
        transport = getattr(self._client, "transport", None)
        close = getattr(transport, "close", None)
        if callable(close):
            await close()
        self._client = None
