"""Shared test helpers for the ledger client tests"""

from .fakes import (
    METHOD,
    BusyOnceUnaryCall,
    FakeResponse,
    FakeRpcError,
    ScriptedUnaryCall,
    make_kind,
    network_map,
)

__all__ = [
    "METHOD",
    "BusyOnceUnaryCall",
    "FakeResponse",
    "FakeRpcError",
    "ScriptedUnaryCall",
    "make_kind",
    "network_map",
]
