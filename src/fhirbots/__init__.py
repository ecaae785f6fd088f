"""fhirbots - event-triggered automation bots for FHIR R4 servers."""

__version__ = "0.1.0"
