from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ScopeState(StrEnum):
    CLEAN = "clean"
    DIRTY = "dirty"
    SNAPSHOTTED = "snapshotted"
    STALE = "stale"


class RecoverySnapshot(BaseModel, frozen=True):
    """Volatile state of one scope, written by the process identified by session_id."""

    scope_key: str
    payload: Any
    saved_at: float
    session_id: str


class ScopeAge(BaseModel, frozen=True):
    scope_key: str
    age: float
    saved_at: float
    is_recent: bool


class RecoveryInfo(BaseModel, frozen=True):
    has_recovery: bool
    states: list[ScopeAge] = Field(default_factory=list)


class LastRecovery(BaseModel, frozen=True):
    timestamp: float
    scopes: list[str]
