from __future__ import annotations

from enum import StrEnum


class LoadState(StrEnum):
    IDLE = "IDLE"
    LOADING = "LOADING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


LOAD_ALLOWED_TRANSITIONS: dict[LoadState, set[LoadState]] = {
    LoadState.IDLE: {LoadState.LOADING},
    LoadState.LOADING: {LoadState.SUCCESS, LoadState.ERROR},
    LoadState.SUCCESS: {LoadState.LOADING},
    LoadState.ERROR: {LoadState.LOADING},
}


def can_load_transition(source: LoadState, target: LoadState) -> bool:
    return target in LOAD_ALLOWED_TRANSITIONS.get(source, set())


class GuardState(StrEnum):
    PENDING = "PENDING"
    DENIED = "DENIED"
    ALLOWED = "ALLOWED"


# Any session change sends the guard back to PENDING for re-evaluation.
GUARD_ALLOWED_TRANSITIONS: dict[GuardState, set[GuardState]] = {
    GuardState.PENDING: {GuardState.DENIED, GuardState.ALLOWED},
    GuardState.DENIED: {GuardState.PENDING},
    GuardState.ALLOWED: {GuardState.PENDING},
}


def can_guard_transition(source: GuardState, target: GuardState) -> bool:
    return target in GUARD_ALLOWED_TRANSITIONS.get(source, set())


class DialogState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    SUBMITTING = "SUBMITTING"


DIALOG_ALLOWED_TRANSITIONS: dict[DialogState, set[DialogState]] = {
    DialogState.CLOSED: {DialogState.OPEN},
    DialogState.OPEN: {DialogState.SUBMITTING, DialogState.CLOSED},
    DialogState.SUBMITTING: {DialogState.OPEN, DialogState.CLOSED},
}


def can_dialog_transition(source: DialogState, target: DialogState) -> bool:
    return target in DIALOG_ALLOWED_TRANSITIONS.get(source, set())


class InvalidTransitionError(Exception):
    pass
