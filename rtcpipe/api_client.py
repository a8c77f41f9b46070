"""One-shot signalling: exchange session descriptions with a single POST."""

import logging
from typing import Optional

import httpx

from .errors import BrokerError
from .models import SessionDescription

logger = logging.getLogger(__name__)


async def post_description(
    server: str,
    slot: str,
    desc: SessionDescription,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """POST our description to ``<server><slot>``; return the broker's response."""
    async with httpx.AsyncClient(transport=transport, timeout=None) as client:
        try:
            response = await client.post(f"{server}{slot}", json=desc.model_dump())
        except httpx.HTTPError as e:
            raise BrokerError(f"could not reach signalling server: {e}") from e
    if response.status_code != 200:
        raise BrokerError(f"signalling server returned status {response.status_code}")
    return response


async def exchange_description(
    server: str,
    slot: str,
    desc: SessionDescription,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SessionDescription:
    """Send our description and return the one the peer sent."""
    logger.info("sending %s", desc.type)
    response = await post_description(server, slot, desc, transport)
    try:
        return SessionDescription.model_validate(response.json())
    except ValueError as e:
        raise BrokerError(f"bad response from signalling server: {e}") from e
