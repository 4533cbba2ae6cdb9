"""Factory helpers that instantiate stores and clients from configuration.

Services accept their collaborators as optional constructor arguments and fall
back to these builders, so tests can inject fakes while production code wires
everything from :mod:`proptrace.settings`.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.orm import sessionmaker

from proptrace.providers.tracer import TracerClient
from proptrace.settings import get_settings
from proptrace.store.job_store import BulkJobStore
from proptrace.store.sql import session_factory as build_sql_session_factory
from proptrace.store.trace_store import TraceStore
from proptrace.store.wallet_store import WalletStore


@lru_cache(maxsize=1)
def shared_session_factory() -> sessionmaker:
    """Return one sessionmaker per process so stores share a connection pool."""

    return build_sql_session_factory(settings=get_settings())


def build_trace_store(session_factory: sessionmaker | None = None) -> TraceStore:
    return TraceStore(session_factory=session_factory or shared_session_factory())


def build_job_store(session_factory: sessionmaker | None = None) -> BulkJobStore:
    return BulkJobStore(session_factory=session_factory or shared_session_factory())


def build_wallet_store(session_factory: sessionmaker | None = None) -> WalletStore:
    return WalletStore(session_factory=session_factory or shared_session_factory())


def build_tracer_client() -> TracerClient:
    """Instantiate a :class:`TracerClient` using the configured provider settings."""

    return TracerClient(settings=get_settings())


__all__ = [
    "build_job_store",
    "build_tracer_client",
    "build_trace_store",
    "build_wallet_store",
    "shared_session_factory",
]
