from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConfigDocument(BaseModel):
    """Report configuration document loaded from a JSON (or YAML) file.

    The document is immutable once loaded. Report keys are upper-cased so
    lookups are case-insensitive.
    """

    model_config = ConfigDict(frozen=True)

    # Required settings
    exports: dict[str, dict[str, Any]]

    # Optional settings with defaults
    defaults: dict[str, Any] = Field(default_factory=dict)

    @field_validator("exports")
    @classmethod
    def normalize_report_keys(
        cls, exports: dict[str, dict[str, Any]]
    ) -> dict[str, dict[str, Any]]:
        normalized: dict[str, dict[str, Any]] = {}
        for key, settings in exports.items():
            upper_key = key.strip().upper()
            if not upper_key:
                raise ValueError("report key must not be blank")
            if upper_key in normalized:
                raise ValueError(f"duplicate report key '{upper_key}'")
            normalized[upper_key] = settings
        return normalized


class StorageTarget(BaseModel):
    """Where a report's files are published."""

    model_config = ConfigDict(frozen=True)

    container: str
    blob_prefix: str
    storage_account: str | None = None
    connection_string: str | None = None
