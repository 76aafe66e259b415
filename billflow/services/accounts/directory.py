"""Account directory lookups over HTTP."""

from dataclasses import dataclass
from typing import Protocol

import httpx

from billflow.common.errors import DataIntegrityError, TransientExternalError


@dataclass(frozen=True)
class AccountContact:
    name: str
    email: str


class DirectoryClient(Protocol):
    async def get_account_contact(self, account_id: str) -> AccountContact: ...


class HttpDirectoryClient:
    """Reads contact details from the accounts service."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_account_contact(self, account_id: str) -> AccountContact:
        url = f"{self.base_url}/internal/accounts/{account_id}/contact"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(url)
        except httpx.TransportError as exc:
            raise TransientExternalError(f"directory unreachable: {exc}") from exc
        if resp.status_code == 404:
            raise DataIntegrityError(f"account {account_id} not found in directory")
        if resp.status_code >= 400:
            raise TransientExternalError(f"directory lookup failed (status={resp.status_code})")
        payload = resp.json()
        return AccountContact(name=payload.get("name", ""), email=payload["email"])
