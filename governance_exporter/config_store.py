"""Report configuration lookup.

Every setting is resolved through the same precedence chain, first usable
value wins:

1. ``exports[<REPORT>][<section>][<name>]``
2. ``exports[<REPORT>][<name>]``
3. ``defaults[<section>][<name>]``
4. ``defaults[<name>]``
5. the caller supplied default

``None`` and blank strings are not usable, so an empty override never hides
a value configured at a lower level.
"""

import functools
import logging
from os import environ
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from governance_exporter import constants
from governance_exporter.exceptions import ConfigurationError
from governance_exporter.settings import ConfigDocument, StorageTarget

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"true", "1", "yes", "y"})
_FALSE_VALUES = frozenset({"false", "0", "no", "n"})

_MISSING = object()


def is_usable(value: Any) -> bool:
    """Return True unless the value is None or a blank string."""
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def to_bool(value: Any, default: bool = False) -> bool:
    """Normalize a bool-like setting.

    Accepts real booleans, the integers ``1/0`` and the strings ``true/1/yes/y`` and
    ``false/0/no/n`` in any case. Anything else yields ``default``.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return value == 1
        return default
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
    return default


def to_list(value: Any) -> list[str]:
    """Turn a list or a comma-delimited string into a list of trimmed strings."""
    if not is_usable(value):
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        items = [value]
    return [str(item).strip() for item in items if is_usable(item)]


def load_config_document(path: Path) -> ConfigDocument:
    """Load and validate the configuration document.

    JSON is a subset of YAML, so ``yaml.safe_load`` reads both formats.

    Raises:
        ConfigurationError: If the file is unreadable or has an invalid shape.
    """
    logger.info("Loading report configuration from %s", path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file '{path}': {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse configuration file '{path}': {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Configuration file '{path}' must contain an object at the top level"
        )
    return parse_config_document(raw)


def parse_config_document(raw: dict[str, Any]) -> ConfigDocument:
    try:
        return ConfigDocument.model_validate(raw)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration document: {details}") from e


class ConfigStore:
    """Resolves report settings from a lazily loaded configuration document."""

    def __init__(
        self,
        path: Path | None = None,
        document: ConfigDocument | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            path: Configuration file, read on first access
            document: Already parsed document, takes precedence over ``path``
        """
        if path is None and document is None:
            raise ValueError("Either path or document must be given")
        self.path = path
        self._document = document

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ConfigStore":
        return cls(document=parse_config_document(raw))

    @property
    def document(self) -> ConfigDocument:
        if self._document is None:
            self._document = load_config_document(self.path)
        return self._document

    def report_keys(self) -> list[str]:
        return sorted(self.document.exports)

    def _export_settings(self, report_key: str) -> dict[str, Any]:
        return self.document.exports.get(report_key.strip().upper(), {})

    def resolve(
        self,
        report_key: str,
        name: str,
        section: str | None = None,
        default: Any = None,
        required: bool = False,
    ) -> Any:
        """Resolve a setting through the precedence chain.

        Raises:
            ConfigurationError: If ``required`` is set and no level yields a
                usable value.
        """
        export_settings = self._export_settings(report_key)
        defaults = self.document.defaults

        for bag in (export_settings, defaults):
            if section:
                section_bag = bag.get(section)
                if isinstance(section_bag, dict):
                    value = section_bag.get(name, _MISSING)
                    if value is not _MISSING and is_usable(value):
                        return value
            value = bag.get(name, _MISSING)
            if value is not _MISSING and is_usable(value):
                return value

        if is_usable(default):
            return default

        if required:
            path = f"{section}.{name}" if section else name
            raise ConfigurationError(
                f"Report '{report_key.upper()}' is missing required setting '{path}'"
            )
        return default

    def is_enabled(self, report_key: str) -> bool:
        return to_bool(self.resolve(report_key, "enabled", default=False), False)

    def resolve_bool(self, report_key: str, name: str, default: bool = False) -> bool:
        return to_bool(self.resolve(report_key, name), default)

    def resolve_int(self, report_key: str, name: str, default: int | None = None) -> int | None:
        """Resolve a numeric threshold or day window.

        Raises:
            ConfigurationError: If the configured value is not an integer.
        """
        value = self.resolve(report_key, name, default=default)
        if value is None or isinstance(value, int) and not isinstance(value, bool):
            return value
        try:
            return int(str(value).strip())
        except ValueError as e:
            raise ConfigurationError(
                f"Report '{report_key.upper()}' setting '{name}' must be an integer, got '{value}'"
            ) from e

    def resolve_list(self, report_key: str, name: str) -> list[str]:
        return to_list(self.resolve(report_key, name))

    def resolve_mapping(self, report_key: str, name: str) -> dict[str, list[str]]:
        """Resolve an object-valued setting such as a per-scope exclusion map.

        Keys are lower-cased so scope ids match case-insensitively.
        """
        value = self.resolve(report_key, name)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ConfigurationError(
                f"Report '{report_key.upper()}' setting '{name}' must be an object"
            )
        return {str(k).strip().lower(): to_list(v) for k, v in value.items()}

    def list_report_keys_by_prefix(self, prefix: str) -> list[str]:
        """Return configured report keys starting with ``prefix`` (case-insensitive)."""
        upper_prefix = prefix.strip().upper()
        return sorted(key for key in self.document.exports if key.startswith(upper_prefix))

    def resolve_formats(self, report_key: str) -> list[str]:
        formats: list[str] = []
        for item in to_list(self.resolve(report_key, "formats")):
            fmt = item.lower()
            if fmt not in constants.ALLOWED_FORMATS:
                logger.debug("Ignoring unsupported format '%s' for %s", item, report_key)
                continue
            if fmt not in formats:
                formats.append(fmt)
        return formats or list(constants.DEFAULT_FORMATS)

    def resolve_storage_target(self, report_key: str) -> StorageTarget:
        connection_string = self.resolve(
            report_key, "storageConnectionString", section="storage"
        )
        return StorageTarget(
            storage_account=self.resolve(
                report_key,
                "storageAccount",
                section="storage",
                required=connection_string is None,
            ),
            container=self.resolve(
                report_key, "storageContainer", section="storage", required=True
            ),
            blob_prefix=str(
                self.resolve(report_key, "blobPrefix", default=report_key.strip().lower())
            ).strip("/"),
            connection_string=connection_string,
        )


@functools.lru_cache(maxsize=None)
def get_config_store(path: Path | None = None) -> ConfigStore:
    """Process-wide store, created on first use and never invalidated."""
    if path is None:
        path = Path(environ.get(constants.CONFIG_PATH_ENV_VAR, constants.DEFAULT_CONFIG_PATH))
    return ConfigStore(path=path)
