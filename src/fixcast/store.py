import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError

from fixcast.exceptions import StoreError
from fixcast.fix import PersistedState

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Durable home of the single PersistedState record.

    ``write`` replaces both fields together or not at all. Callers are
    responsible for serializing read-modify-write sequences.
    """

    @abstractmethod
    def read(self) -> PersistedState: ...

    @abstractmethod
    def write(self, state: PersistedState) -> None: ...


class MemoryStateStore(StateStore):
    def __init__(self, state: PersistedState | None = None) -> None:
        self._state = (state or PersistedState()).model_copy(deep=True)

    def read(self) -> PersistedState:
        return self._state.model_copy(deep=True)

    def write(self, state: PersistedState) -> None:
        self._state = state.model_copy(deep=True)


class JsonFileStateStore(StateStore):
    """Stores the record as JSON, replacing the file atomically on write."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> PersistedState:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return PersistedState()
        except OSError as exc:
            raise StoreError(f"Cannot read {self.path}: {exc}") from exc

        try:
            return PersistedState.model_validate_json(raw)
        except ValidationError as exc:
            raise StoreError(f"Corrupt state file {self.path}: {exc}") from exc

    def write(self, state: PersistedState) -> None:
        data = state.model_dump_json(indent=2)
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("Could not remove temp file %s", tmp_name)
            raise StoreError(f"Cannot write {self.path}: {exc}") from exc
        logger.debug("State written to %s", self.path)
