"""Structured error types for adstore."""

from __future__ import annotations


class AdStoreError(Exception):
    """Base error for all adstore errors."""


class DataAccessError(AdStoreError):
    """Raised when a storage operation fails (transport, duplicate key, bad sequencing)."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Data access error during {operation}: {detail}")


class StaleEntityError(DataAccessError):
    """Raised when a save presents a version that is behind the stored version."""

    def __init__(self, entity_id: str, submitted: int, current: int) -> None:
        self.entity_id = entity_id
        self.submitted = submitted
        self.current = current
        super().__init__(
            "save_entity",
            f"stale entity {entity_id}: submitted version {submitted}, current version {current}",
        )


class EntityNotFoundError(DataAccessError):
    """Raised when a requested entity id has no index entry."""

    def __init__(self, entity_ids: list[str]) -> None:
        self.entity_ids = entity_ids
        super().__init__("get_entity", f"entity not found: {', '.join(entity_ids)}")


class ValidationError(AdStoreError):
    """Raised when data fails validation (malformed value, duplicate name, bad filter)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
