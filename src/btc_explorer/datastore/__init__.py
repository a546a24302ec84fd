"""Datastore — async SQLAlchemy engine and session management."""

from __future__ import annotations

from btc_explorer.datastore.client import Datastore
from btc_explorer.datastore.engines import create_engine

__all__ = ["Datastore", "create_engine"]
