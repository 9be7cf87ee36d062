"""Observable state of a training run."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class FetchingData:
    pass


@dataclass(frozen=True)
class Loading:
    progress: int
    total: int
    filename: str
    message: str | None = None


@dataclass(frozen=True)
class CancelRequested:
    pass


@dataclass(frozen=True)
class Complete:
    errors: tuple[str, ...] = field(default_factory=tuple)


TrainingState = Idle | FetchingData | Loading | CancelRequested | Complete

IDLE = Idle()
FETCHING_DATA = FetchingData()
CANCEL_REQUESTED = CancelRequested()


def pluralize(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


def truncate(text: str, max_length: int) -> str:
    return text if len(text) <= max_length else f"{text[:max_length]}..."


def training_state_message(state: TrainingState, num_files: int | None = None) -> str:
    """Human-readable description of *state* for progress displays.

    Outside of a run, *num_files* (when given) reports how many files the
    project holds.
    """
    if isinstance(state, Loading):
        if state.message:
            return state.message
        suffix = f" ({truncate(state.filename, 20)})" if state.filename else ""
        return f"Processing file {state.progress} of {state.total}{suffix}"
    if isinstance(state, Complete):
        return "Done processing files"
    if isinstance(state, CancelRequested):
        return "Stopping processing..."
    if num_files is not None:
        return f"{pluralize(num_files, 'file', 'files')} added"
    return ""
