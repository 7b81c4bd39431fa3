"""Distributed chunked rendering orchestrator.

A launch splits a composition's frames into chunks, fans render requests out to
stateless workers through Celery and reassembles their outputs. All coordination
goes through a shared object store keyed by job id.
"""

__version__ = "0.1.0"
