# ==============================================================================
# Handle Registry
# ==============================================================================
#
# Session-scoped mapping from handle id to the handle and its cluster object.
#
# Lifecycle:
#   valid  --remove()-->   removed   (lookups raise NotFoundError)
#   valid  --close()-->    closed    (every lookup raises StateError)
#
# Payloads are whatever the session keeps for a handle: a Ray Dataset for
# datasets, a TrainOutcome-like record for models.
#
# ==============================================================================

import uuid
from typing import Any, Dict, List, Tuple

from src._utils.logging import get_logger
from src.session import errors
from src.session.handles import DatasetHandle, ModelHandle

logger = get_logger(__name__)

Handle = DatasetHandle | ModelHandle


class HandleRegistry:
    def __init__(self):
        self._entries: Dict[str, Tuple[Handle, Any]] = {}
        self._closed = False

    @staticmethod
    def new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:8]}"

    @property
    def closed(self) -> bool:
        return self._closed

    def check_open(self) -> None:
        if self._closed:
            raise errors.StateError("Session is closed; all handles are invalid")

    def register(self, handle: Handle, payload: Any) -> Handle:
        self.check_open()
        if handle.id in self._entries:
            raise errors.ValidationError(f"Handle id '{handle.id}' is already in use")
        self._entries[handle.id] = (handle, payload)
        logger.debug(f"Registered {type(handle).__name__} {handle.id}")
        return handle

    def contains(self, handle_id: str) -> bool:
        return handle_id in self._entries

    def get(self, handle: Handle | str, kind: type | None = None) -> Tuple[Handle, Any]:
        """Return ``(handle, payload)`` for a handle or id."""
        self.check_open()
        handle_id = handle if isinstance(handle, str) else handle.id
        entry = self._entries.get(handle_id)
        if entry is None:
            raise errors.NotFoundError(f"No handle '{handle_id}' in this session")
        if kind is not None and not isinstance(entry[0], kind):
            raise errors.NotFoundError(
                f"Handle '{handle_id}' is not a {kind.__name__}"
            )
        return entry

    def remove(self, handle: Handle | str) -> None:
        self.check_open()
        handle_id = handle if isinstance(handle, str) else handle.id
        if self._entries.pop(handle_id, None) is None:
            raise errors.NotFoundError(f"No handle '{handle_id}' in this session")
        logger.debug(f"Removed handle {handle_id}")

    def handles(self) -> List[Handle]:
        self.check_open()
        return [handle for handle, _ in self._entries.values()]

    def clear(self) -> int:
        self.check_open()
        count = len(self._entries)
        self._entries.clear()
        return count

    def close(self) -> None:
        self._entries.clear()
        self._closed = True
