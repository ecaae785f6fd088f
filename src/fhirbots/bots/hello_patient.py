"""Minimal bot: greet the triggering Patient."""

from __future__ import annotations

import logging

from ..protocols import FhirClientProtocol
from .schemas import BotEvent

logger = logging.getLogger(__name__)


async def handler(medplum: FhirClientProtocol, event: BotEvent) -> bool:
    name = ((event.input or {}).get("name") or [{}])[0]
    logger.info(f"Hello {(name.get('given') or [None])[0]} {name.get('family')}!")
    return True
