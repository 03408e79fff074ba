"""Host-facing characteristic cache fed by committed state."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from .errors import FatalProjectionError
from .state import ProjectionEvent


class StateProjection:
    """Latest characteristic values plus per-characteristic error markers."""

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}
        self._services: Dict[str, str] = {}
        self._errors: Dict[str, BaseException] = {}

    def apply(self, events: Iterable[ProjectionEvent]) -> None:
        for event in events:
            self._values[event.characteristic] = event.value
            self._services[event.characteristic] = event.service
            self._errors.pop(event.characteristic, None)

    def mark_error(self, characteristics: Iterable[str], error: BaseException) -> None:
        for name in characteristics:
            self._errors[name] = error

    def error_for(self, characteristic: str) -> Optional[BaseException]:
        return self._errors.get(characteristic)

    def read(self, characteristic: str) -> Any:
        """Return the current value, raising if the characteristic is errored."""

        error = self._errors.get(characteristic)
        if error is not None:
            raise FatalProjectionError(f"{characteristic} unavailable: {error}") from error
        return self._values[characteristic]

    def snapshot(self) -> Dict[str, Any]:
        services: Dict[str, Dict[str, Any]] = {}
        for name, value in self._values.items():
            services.setdefault(self._services[name], {})[name] = value
        return {
            "services": services,
            "errors": {name: str(error) for name, error in self._errors.items()},
        }
