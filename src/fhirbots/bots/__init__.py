"""Event-triggered FHIR bots.

Every bot module exposes ``async handler(medplum, event)`` taking a
FhirClientProtocol and a BotEvent.
"""

from .schemas import BotEvent, BotInputError

__all__ = ["BotEvent", "BotInputError"]
