"""Web API for fhirp2p."""

from .app import create_app, run_server

__all__ = ["create_app", "run_server"]
