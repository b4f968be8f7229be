from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class VersionState:
    model_version: int
    model_path: str | None


class VersionTracker:
    """Identity of the currently loaded model; cached prefixes are only valid within one version."""

    def __init__(self) -> None:
        self._state = VersionState(model_version=0, model_path=None)

    def get(self) -> VersionState:
        return self._state

    def bump(self, new_model_path: str) -> VersionState:
        self._state = VersionState(
            model_version=self._state.model_version + 1,
            model_path=new_model_path,
        )
        return self._state

    def clear(self) -> VersionState:
        # Counter stays monotonic across unloads.
        self._state = VersionState(model_version=self._state.model_version, model_path=None)
        return self._state
