from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request

from constants import TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_API_BASE, ICE_TOKEN_TTL
from logging_config import get_logger
from schemas.ice import IceServer, IceServersResponse

logger = get_logger(__name__)

ice_router = APIRouter(tags=["ice"])


class IceCredentialsError(Exception):
    pass


class IceCredentialsClient:
    """Issues short-lived TURN/STUN credentials through Twilio's Network Traversal Service."""

    def __init__(
        self,
        account_sid: Optional[str] = TWILIO_ACCOUNT_SID,
        auth_token: Optional[str] = TWILIO_AUTH_TOKEN,
        api_base: str = TWILIO_API_BASE,
        ttl: int = ICE_TOKEN_TTL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.api_base = api_base.rstrip("/")
        self.ttl = ttl
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    async def fetch_ice_servers(self) -> List[IceServer]:
        if not self.configured:
            raise IceCredentialsError("ICE credentials provider is not configured")

        url = f"{self.api_base}/2010-04-01/Accounts/{self.account_sid}/Tokens.json"
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                response = await client.post(url, data={"Ttl": str(self.ttl)}, auth=(self.account_sid, self.auth_token))
        except httpx.HTTPError as e:
            raise IceCredentialsError(f"Credentials request failed: {e}") from e

        if response.status_code >= 400:
            raise IceCredentialsError(f"Credentials provider returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise IceCredentialsError("Credentials provider returned invalid JSON") from e

        servers = []
        for entry in body.get("ice_servers") or []:
            # Twilio returns both the legacy "url" and the standard "urls"
            urls = entry.get("urls") or entry.get("url")
            if not urls:
                continue
            servers.append(IceServer(urls=urls, username=entry.get("username"), credential=entry.get("credential")))
        return servers


def get_ice_client() -> IceCredentialsClient:
    return IceCredentialsClient()


@ice_router.get("/ice-servers", response_model=IceServersResponse, response_model_exclude_none=True)
async def get_ice_servers(request: Request, client: IceCredentialsClient = Depends(get_ice_client)):
    """
    Temporary ICE server list for browser peers.

    Returns:
    - iceServers: list of {urls, username, credential}
    """
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"ICE servers request from {client_host}")
    try:
        servers = await client.fetch_ice_servers()
    except IceCredentialsError as e:
        logger.error(f"Error fetching ICE servers: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    logger.debug(f"Returning {len(servers)} ICE servers to {client_host}")
    return IceServersResponse(ice_servers=servers)
