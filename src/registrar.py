"""
Registrar Client - HTTP access to the agent's extension registry.

The agent exposes ``/extensions``: GET lists current registrations, POST
registers one descriptor and DELETE removes one. Mutations authenticate with
HTTP basic auth using a fixed user name and the agent key.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from models import ExtensionDescriptor

logger = logging.getLogger(__name__)

EXTENSIONS_PATH = "/extensions"
AUTH_USER = "_"


class RegistrarError(Exception):
    """Raised when a call to the agent fails or returns a non-2xx status."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class RegistrarClient:
    """
    Client for the agent's extension registry.

    A session is opened per call; calls are infrequent and this keeps the
    client free of lifecycle management.
    """

    def __init__(self, base_url: str, agent_key: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._auth = aiohttp.BasicAuth(AUTH_USER, agent_key)
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}{EXTENSIONS_PATH}"

    async def list_extensions(self) -> List[ExtensionDescriptor]:
        """
        Fetch the agent's current registrations.

        An empty or ``null`` body is an empty list.

        Raises:
            RegistrarError: On transport errors, non-2xx status or invalid JSON
        """
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(
                    self.url, headers={"Accept": "application/json"}
                ) as resp:
                    body = await resp.text()
                    if not 200 <= resp.status < 300:
                        raise RegistrarError(
                            f"Failed to get extension registrations from the agent: "
                            f"HTTP {resp.status}",
                            status=resp.status,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistrarError(
                f"Failed to get extension registrations from the agent: {e}"
            )

        if not body.strip():
            return []
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise RegistrarError(f"Agent returned invalid extension list: {e}")
        if data is None:
            return []
        if not isinstance(data, list):
            raise RegistrarError("Agent returned an extension list that is not an array")

        try:
            registrations = [ExtensionDescriptor.from_dict(item) for item in data]
        except (AttributeError, TypeError, ValueError) as e:
            raise RegistrarError(f"Agent returned a malformed registration: {e}")
        logger.debug(f"Got {len(registrations)} extension registrations from the agent")
        return registrations

    async def add_extension(self, descriptor: ExtensionDescriptor) -> None:
        """
        Register a descriptor with the agent.

        Raises:
            RegistrarError: On transport errors or non-2xx status
        """
        await self._send("POST", descriptor.to_dict(), "register", descriptor)
        logger.info(f"Registered extension: {descriptor}")

    async def delete_extension(self, descriptor: ExtensionDescriptor) -> None:
        """
        Deregister a descriptor from the agent.

        Raises:
            RegistrarError: On transport errors or non-2xx status
        """
        await self._send("DELETE", descriptor.to_dict(), "deregister", descriptor)
        logger.info(f"Deregistered extension: {descriptor}")

    async def _send(
        self,
        method: str,
        payload: Dict[str, Any],
        action: str,
        descriptor: ExtensionDescriptor,
    ) -> None:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(
                    method, self.url, json=payload, auth=self._auth
                ) as resp:
                    if not 200 <= resp.status < 300:
                        raise RegistrarError(
                            f"Failed to {action} extension {descriptor}: "
                            f"HTTP {resp.status}",
                            status=resp.status,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistrarError(f"Failed to {action} extension {descriptor}: {e}")
