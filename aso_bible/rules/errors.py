from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RulesetErrorCode:
    code: str
    message: str


ASO_001_PROFILE_NOT_FOUND = RulesetErrorCode(
    "ASO_001_PROFILE_NOT_FOUND",
    "Requested vertical or market profile was not found.",
)
ASO_002_VALIDATION_FAILED = RulesetErrorCode(
    "ASO_002_VALIDATION_FAILED",
    "Override payload validation failed.",
)
ASO_003_STORE_FAILED = RulesetErrorCode(
    "ASO_003_STORE_FAILED",
    "Override store query failed.",
)
ASO_004_DUPLICATE_OVERRIDE = RulesetErrorCode(
    "ASO_004_DUPLICATE_OVERRIDE",
    "Another active override exists for the same natural key.",
)
ASO_005_SNAPSHOT_NOT_FOUND = RulesetErrorCode(
    "ASO_005_SNAPSHOT_NOT_FOUND",
    "No ruleset snapshot exists for the requested target.",
)
ASO_006_CATALOG_INVALID = RulesetErrorCode(
    "ASO_006_CATALOG_INVALID",
    "Profile catalog file could not be loaded.",
)


class RulesetError(RuntimeError):
    def __init__(self, err: RulesetErrorCode, detail: str = "") -> None:
        suffix = f" detail={detail}" if detail else ""
        super().__init__(f"{err.code}: {err.message}{suffix}")
        self.err = err
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.err.code, "message": self.err.message, "detail": self.detail}


class ProfileNotFoundError(RulesetError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ASO_001_PROFILE_NOT_FOUND, detail)


class ValidationError(RulesetError):
    def __init__(self, detail: str = "", errors: list[str] | None = None) -> None:
        super().__init__(ASO_002_VALIDATION_FAILED, detail)
        self.errors = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": self.errors}


class StoreError(RulesetError):
    """Wraps a failed store call; ``store_code`` keeps the driver/SQLAlchemy error code."""

    def __init__(self, detail: str = "", store_code: str | None = None) -> None:
        super().__init__(ASO_003_STORE_FAILED, detail)
        self.store_code = store_code

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "store_code": self.store_code}


class DuplicateOverrideError(RulesetError):
    def __init__(self, detail: str = "", row_ids: list[int] | None = None) -> None:
        super().__init__(ASO_004_DUPLICATE_OVERRIDE, detail)
        self.row_ids = list(row_ids or [])


class SnapshotNotFoundError(RulesetError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ASO_005_SNAPSHOT_NOT_FOUND, detail)


class CatalogError(RulesetError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ASO_006_CATALOG_INVALID, detail)
