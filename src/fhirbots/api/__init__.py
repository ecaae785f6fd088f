"""HTTP API for running fhirbots."""
