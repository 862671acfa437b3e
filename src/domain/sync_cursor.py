from __future__ import annotations

import copy
from typing import Any

from .records import PhaseStatus

PHASE_STATUS_KEY = "phaseStatus"
TOTAL_PHASES = 4


def phase_key(phase: int) -> str:
    return f"phase{phase}"


class SyncCursor:
    """Opaque per-connection resume state.

    Only ``phaseStatus`` and ``phase<N>`` are interpreted here; whatever a
    connector stores inside ``phase<N>`` is passed through untouched.
    """

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(data) if data else {}

    def phase_status(self, phase: int) -> PhaseStatus:
        raw = self._data.get(PHASE_STATUS_KEY, {}).get(str(phase))
        return PhaseStatus(raw) if raw else PhaseStatus.PENDING

    def phase_statuses(self) -> dict[int, PhaseStatus]:
        return {phase: self.phase_status(phase) for phase in range(1, TOTAL_PHASES + 1)}

    def set_phase_status(self, phase: int, status: PhaseStatus) -> None:
        self._data.setdefault(PHASE_STATUS_KEY, {})[str(phase)] = status.value

    def phase_cursor(self, phase: int) -> dict[str, Any]:
        # Connectors get their own copy; the stored value only changes via set_phase_cursor.
        return copy.deepcopy(self._data.get(phase_key(phase), {}))

    def set_phase_cursor(self, phase: int, value: dict[str, Any]) -> None:
        self._data[phase_key(phase)] = copy.deepcopy(value)

    def reset_phase(self, phase: int) -> None:
        self._data[phase_key(phase)] = {}

    def to_json(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


__all__ = ["PHASE_STATUS_KEY", "SyncCursor", "TOTAL_PHASES", "phase_key"]
