"""Tests for governance_exporter.config_store module."""

import json

import pytest

from governance_exporter.config_store import (
    ConfigStore,
    get_config_store,
    load_config_document,
    to_bool,
    to_list,
)
from governance_exporter.exceptions import ConfigurationError
from governance_exporter.settings import StorageTarget


def layered_store(**levels) -> ConfigStore:
    """Build a store with ``setting`` configured at the requested levels."""
    defaults: dict = {}
    export: dict = {"enabled": True}
    if "defaults_direct" in levels:
        defaults["setting"] = levels["defaults_direct"]
    if "defaults_section" in levels:
        defaults["storage"] = {"setting": levels["defaults_section"]}
    if "export_direct" in levels:
        export["setting"] = levels["export_direct"]
    if "export_section" in levels:
        export["storage"] = {"setting": levels["export_section"]}
    return ConfigStore.from_dict({"defaults": defaults, "exports": {"R": export}})


class TestResolvePrecedence:
    """Test cases for the five-level resolution chain."""

    def test_export_section_wins(self):
        """Test export section wins."""
        store = layered_store(
            export_section="es", export_direct="ed", defaults_section="ds", defaults_direct="dd"
        )
        assert store.resolve("R", "setting", section="storage") == "es"

    def test_export_direct_over_defaults(self):
        """Test export direct over defaults."""
        store = layered_store(export_direct="ed", defaults_section="ds", defaults_direct="dd")
        assert store.resolve("R", "setting", section="storage") == "ed"

    def test_defaults_section_over_defaults_direct(self):
        """Test defaults section over defaults direct."""
        store = layered_store(defaults_section="ds", defaults_direct="dd")
        assert store.resolve("R", "setting", section="storage") == "ds"

    def test_defaults_direct_then_caller_default(self):
        """Test defaults direct then caller default."""
        assert layered_store(defaults_direct="dd").resolve("R", "setting", section="storage") == "dd"
        assert layered_store().resolve("R", "setting", section="storage", default="x") == "x"

    def test_blank_override_does_not_mask_lower_level(self):
        """Test blank override does not mask lower level."""
        store = layered_store(export_section="   ", export_direct="", defaults_direct="dd")
        assert store.resolve("R", "setting", section="storage") == "dd"

    def test_null_override_does_not_mask_lower_level(self):
        """Test null override does not mask lower level."""
        store = layered_store(export_direct=None, defaults_section="ds")
        assert store.resolve("R", "setting", section="storage") == "ds"

    def test_without_section_skips_section_levels(self):
        """Test without section skips section levels."""
        store = layered_store(export_section="es", defaults_direct="dd")
        assert store.resolve("R", "setting") == "dd"

    def test_report_key_lookup_is_case_insensitive(self):
        """Test report key lookup is case insensitive."""
        store = layered_store(export_direct="ed")
        assert store.resolve("r", "setting") == "ed"

    def test_setting_names_are_case_sensitive(self):
        """Test setting names are case sensitive."""
        store = layered_store(export_direct="ed")
        assert store.resolve("R", "SETTING") is None

    def test_required_missing_names_report_and_path(self):
        """Test required missing names report and path."""
        store = layered_store()
        with pytest.raises(ConfigurationError) as exc_info:
            store.resolve("r", "storageContainer", section="storage", required=True)
        assert "'R'" in str(exc_info.value)
        assert "storage.storageContainer" in str(exc_info.value)

    def test_required_satisfied_by_default(self):
        """Test required satisfied by default."""
        assert layered_store().resolve("R", "setting", default=5, required=True) == 5

    def test_unknown_report_uses_defaults(self):
        """Test unknown report uses defaults."""
        store = layered_store(defaults_direct="dd")
        assert store.resolve("OTHER", "setting") == "dd"


class TestBooleanNormalizer:
    """Test cases for to_bool and is_enabled."""

    @pytest.mark.parametrize("value", [True, 1, "true", "TRUE", "1", "yes", "Y", " y "])
    def test_truthy(self, value):
        """Test values normalized to True."""
        assert to_bool(value) is True

    @pytest.mark.parametrize("value", [False, 0, "false", "0", "No", "n"])
    def test_falsy(self, value):
        """Test values normalized to False."""
        assert to_bool(value, default=True) is False

    @pytest.mark.parametrize("value", [2, -1, 10])
    def test_other_integers_fall_back_to_default(self, value):
        """Test that integers other than 1 and 0 yield the default."""
        assert to_bool(value, default=False) is False
        assert to_bool(value, default=True) is True

    def test_unknown_string_falls_back_to_default(self):
        """Test unknown string falls back to default."""
        assert to_bool("maybe", default=True) is True
        assert to_bool("maybe", default=False) is False

    def test_is_enabled(self, config_store):
        """Test enabled flag resolution per report."""
        assert config_store.is_enabled("USERS") is True
        assert config_store.is_enabled("groupmembers_a") is True
        assert config_store.is_enabled("GROUPMEMBERS_B") is False
        assert config_store.is_enabled("DISABLED") is False
        assert config_store.is_enabled("NOT_CONFIGURED") is False


class TestListHelpers:
    """Test cases for list helpers."""

    def test_to_list_from_csv_string(self):
        """Test to list from csv string."""
        assert to_list(" a, b ,,c ") == ["a", "b", "c"]

    def test_to_list_from_list_drops_blanks(self):
        """Test to list from list drops blanks."""
        assert to_list(["a", "", None, " b "]) == ["a", "b"]

    def test_to_list_blank(self):
        """Test to list blank."""
        assert to_list(None) == []
        assert to_list("  ") == []

    def test_resolve_list(self, config_store):
        """Test list settings from lists and comma-delimited strings."""
        assert config_store.resolve_list("GROUPMEMBERS_A", "groupIds") == ["g1", "g2"]
        assert config_store.resolve_list("GROUPMEMBERS_B", "groupIds") == ["g3"]

    def test_resolve_int(self):
        """Test integer settings and their errors."""
        store = ConfigStore.from_dict(
            {"exports": {"R": {"inactiveDays": "90", "bad": "ninety"}}}
        )
        assert store.resolve_int("R", "inactiveDays") == 90
        assert store.resolve_int("R", "missing", default=30) == 30
        with pytest.raises(ConfigurationError):
            store.resolve_int("R", "bad")

    def test_resolve_mapping_lowercases_keys(self):
        """Test resolve mapping lowercases keys."""
        store = ConfigStore.from_dict(
            {"exports": {"R": {"propertyExclusions": {"G1": "mail, department"}}}}
        )
        assert store.resolve_mapping("R", "propertyExclusions") == {
            "g1": ["mail", "department"]
        }

    def test_resolve_mapping_rejects_non_object(self):
        """Test resolve mapping rejects non object."""
        store = ConfigStore.from_dict({"exports": {"R": {"propertyExclusions": ["x"]}}})
        with pytest.raises(ConfigurationError):
            store.resolve_mapping("R", "propertyExclusions")


class TestPrefixDiscovery:
    """Test cases for prefix discovery."""

    def test_prefix_match_is_case_insensitive_and_sorted(self, config_store):
        """Test prefix match is case insensitive and sorted."""
        assert config_store.list_report_keys_by_prefix("groupMembers_") == [
            "GROUPMEMBERS_A",
            "GROUPMEMBERS_B",
        ]

    def test_prefix_without_match(self, config_store):
        """Test prefix without match."""
        assert config_store.list_report_keys_by_prefix("nothing") == []


class TestResolveFormats:
    """Test cases for resolve_formats."""

    def test_filters_dedupes_and_normalizes(self):
        """Test filters dedupes and normalizes."""
        store = ConfigStore.from_dict(
            {"exports": {"R": {"formats": "JSON, bogus,csv,CSV"}}}
        )
        assert store.resolve_formats("R") == ["json", "csv"]

    def test_accepts_list(self):
        """Test accepts list."""
        store = ConfigStore.from_dict({"exports": {"R": {"formats": ["HTML", "json", "html"]}}})
        assert store.resolve_formats("R") == ["html", "json"]

    def test_defaults_to_json_when_nothing_valid(self):
        """Test defaults to json when nothing valid."""
        store = ConfigStore.from_dict({"exports": {"R": {"formats": "xml, pdf"}}})
        assert store.resolve_formats("R") == ["json"]

    def test_defaults_to_json_when_missing(self):
        """Test defaults to json when missing."""
        store = ConfigStore.from_dict({"exports": {"R": {}}})
        assert store.resolve_formats("R") == ["json"]


class TestResolveStorageTarget:
    """Test cases for resolve_storage_target."""

    def test_inherits_defaults_and_lowercases_prefix(self, config_store):
        """Test inherits defaults and lowercases prefix."""
        target = config_store.resolve_storage_target("Users")
        assert target == StorageTarget(
            storage_account="defaultaccount",
            container="reports",
            blob_prefix="users",
            connection_string=None,
        )

    def test_export_overrides(self):
        """Test export overrides."""
        store = ConfigStore.from_dict(
            {
                "defaults": {"storage": {"storageAccount": "a", "storageContainer": "c"}},
                "exports": {
                    "R": {
                        "blobPrefix": "/custom/path/",
                        "storage": {
                            "storageContainer": "other",
                            "storageConnectionString": "UseDevelopmentStorage=true",
                        },
                    }
                },
            }
        )
        target = store.resolve_storage_target("R")
        assert target.container == "other"
        assert target.storage_account == "a"
        assert target.blob_prefix == "custom/path"
        assert target.connection_string == "UseDevelopmentStorage=true"

    def test_connection_string_makes_account_optional(self):
        """Test connection string makes account optional."""
        store = ConfigStore.from_dict(
            {
                "exports": {
                    "R": {
                        "storage": {
                            "storageContainer": "c",
                            "storageConnectionString": "UseDevelopmentStorage=true",
                        }
                    }
                }
            }
        )
        assert store.resolve_storage_target("R").storage_account is None

    def test_missing_container_is_an_error(self):
        """Test missing container is an error."""
        store = ConfigStore.from_dict({"exports": {"R": {"storage": {"storageAccount": "a"}}}})
        with pytest.raises(ConfigurationError, match="storage.storageContainer"):
            store.resolve_storage_target("R")


class TestLoading:
    """Test cases for loading the configuration document."""

    def test_load_json_file(self, tmp_path, sample_config):
        """Test loading a JSON configuration file."""
        path = tmp_path / "reports.json"
        path.write_text(json.dumps(sample_config))
        store = ConfigStore(path=path)
        assert store.report_keys() == [
            "DISABLED",
            "GROUPMEMBERS_A",
            "GROUPMEMBERS_B",
            "USERS",
        ]

    def test_load_yaml_file(self, tmp_path):
        """Test loading a YAML configuration file."""
        path = tmp_path / "reports.yaml"
        path.write_text("exports:\n  r1:\n    enabled: yes\n")
        assert ConfigStore(path=path).is_enabled("R1") is True

    def test_document_is_loaded_lazily_once(self, tmp_path, mocker):
        """Test document is loaded lazily once."""
        path = tmp_path / "reports.json"
        path.write_text('{"exports": {}}')
        load = mocker.patch(
            "governance_exporter.config_store.load_config_document",
            wraps=load_config_document,
        )
        store = ConfigStore(path=path)
        load.assert_not_called()
        store.report_keys()
        store.report_keys()
        load.assert_called_once_with(path)

    def test_missing_file(self, tmp_path):
        """Test handling of a missing file."""
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_config_document(tmp_path / "missing.json")

    def test_unparsable_file(self, tmp_path):
        """Test unparsable file."""
        path = tmp_path / "broken.json"
        path.write_text('{"exports": [')
        with pytest.raises(ConfigurationError, match="Cannot parse"):
            load_config_document(path)

    def test_non_object_root(self, tmp_path):
        """Test non object root."""
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigurationError, match="top level"):
            load_config_document(path)

    @pytest.mark.parametrize(
        "raw",
        [
            {"defaults": {}},
            {"exports": []},
            {"exports": {"R": "not-an-object"}},
            {"defaults": "nope", "exports": {}},
            {"exports": {"r": {}, "R": {}}},
        ],
    )
    def test_invalid_shapes(self, raw):
        """Test that malformed documents are rejected."""
        with pytest.raises(ConfigurationError, match="Invalid configuration document"):
            ConfigStore.from_dict(raw)

    def test_store_requires_a_source(self):
        """Test store requires a source."""
        with pytest.raises(ValueError):
            ConfigStore()

    def test_process_wide_store_is_cached(self, tmp_path, monkeypatch):
        """Test process wide store is cached."""
        path = tmp_path / "reports.json"
        path.write_text('{"exports": {}}')
        get_config_store.cache_clear()
        monkeypatch.setenv("REPORT_CONFIG_PATH", str(path))
        try:
            first = get_config_store()
            assert first is get_config_store()
            assert first.path == path
        finally:
            get_config_store.cache_clear()
