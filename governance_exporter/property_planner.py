"""Translate requested output columns into a field selection and projection.

A report asks for output columns by name (``properties`` in its settings).
The planner turns that list into the set of fields to ``$select`` from the
directory and a list of mappings describing how each output column is
filled from a fetched record or from the partition/run context.
"""

import enum
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)


class SourceScope(enum.Enum):
    CONTEXT = "context"
    RECORD = "record"


@dataclass(frozen=True)
class FieldDescriptor:
    """Entry of the known-field table."""

    output_name: str
    scope: SourceScope
    source_field: str
    nested_field: str | None = None


@dataclass(frozen=True)
class PropertyMapping:
    output_name: str
    source_scope: SourceScope
    source_field: str
    nested_field: str | None = None
    # The requested property this mapping was built from
    requested_name: str = ""


@dataclass(frozen=True)
class PropertyPlan:
    select_fields: tuple[str, ...]
    mappings: tuple[PropertyMapping, ...]

    @property
    def output_names(self) -> list[str]:
        return [m.output_name for m in self.mappings]

    def mappings_for_field(self, field_name: str) -> list[PropertyMapping]:
        """Return record mappings that select ``field_name`` (case-insensitive)."""
        wanted = field_name.lower()
        return [
            m
            for m in self.mappings
            if m.source_scope is SourceScope.RECORD and m.source_field.lower() == wanted
        ]


def _record(output_name: str, source_field: str) -> FieldDescriptor:
    return FieldDescriptor(output_name, SourceScope.RECORD, source_field)


def _context(output_name: str, source_field: str) -> FieldDescriptor:
    return FieldDescriptor(output_name, SourceScope.CONTEXT, source_field)


CONTEXT_FIELDS: dict[str, FieldDescriptor] = {
    "groupid": _context("GroupId", "groupId"),
    "groupdisplayname": _context("GroupDisplayName", "groupDisplayName"),
    "administrativeunitid": _context("AdministrativeUnitId", "administrativeUnitId"),
    "administrativeunitdisplayname": _context(
        "AdministrativeUnitDisplayName", "administrativeUnitDisplayName"
    ),
    "reporttimestamp": _context("ReportTimestamp", "reportTimestamp"),
}

RECORD_FIELDS: dict[str, FieldDescriptor] = {
    "userid": _record("UserId", "id"),
    "displayname": _record("DisplayName", "displayName"),
    "givenname": _record("GivenName", "givenName"),
    "surname": _record("Surname", "surname"),
    "mail": _record("Mail", "mail"),
    "userprincipalname": _record("UserPrincipalName", "userPrincipalName"),
    "jobtitle": _record("JobTitle", "jobTitle"),
    "department": _record("Department", "department"),
    "companyname": _record("CompanyName", "companyName"),
    "officelocation": _record("OfficeLocation", "officeLocation"),
    "mobilephone": _record("MobilePhone", "mobilePhone"),
    "accountenabled": _record("AccountEnabled", "accountEnabled"),
    "usertype": _record("UserType", "userType"),
    "createddatetime": _record("CreatedDateTime", "createdDateTime"),
    "employeeid": _record("EmployeeId", "employeeId"),
    "usagelocation": _record("UsageLocation", "usageLocation"),
    "onpremisessamaccountname": _record(
        "OnPremisesSamAccountName", "onPremisesSamAccountName"
    ),
    "onpremisessyncenabled": _record("OnPremisesSyncEnabled", "onPremisesSyncEnabled"),
    "lastpasswordchangedatetime": _record(
        "LastPasswordChangeDateTime", "lastPasswordChangeDateTime"
    ),
    "lastsignindatetime": FieldDescriptor(
        "LastSignInDateTime",
        SourceScope.RECORD,
        "signInActivity",
        "lastSignInDateTime",
    ),
}

# extensionAttribute1 .. extensionAttribute15 live inside onPremisesExtensionAttributes
EXTENSION_ATTRIBUTE_PATTERN = re.compile(r"^extensionattribute(\d{1,2})$")
EXTENSION_ATTRIBUTE_RANGE = range(1, 16)
EXTENSION_ATTRIBUTE_PARENT = "onPremisesExtensionAttributes"


def lookup_field(name: str, context_field_names: Iterable[str] = ()) -> FieldDescriptor:
    """Find how a requested property is filled.

    Context fields only apply when the caller provides them; unknown names
    pass through as a record field of the same name.
    """
    normalized = name.strip().lower()
    context_names = {c.strip().lower(): c.strip() for c in context_field_names}

    if normalized in context_names:
        known = CONTEXT_FIELDS.get(normalized)
        if known is not None:
            return known
        return _context(name.strip(), context_names[normalized])

    known = RECORD_FIELDS.get(normalized)
    if known is not None:
        return known

    match = EXTENSION_ATTRIBUTE_PATTERN.match(normalized)
    if match and int(match.group(1)) in EXTENSION_ATTRIBUTE_RANGE:
        index = int(match.group(1))
        return FieldDescriptor(
            f"ExtensionAttribute{index}",
            SourceScope.RECORD,
            EXTENSION_ATTRIBUTE_PARENT,
            f"extensionAttribute{index}",
        )

    return _record(name.strip(), name.strip())


def build_plan(
    requested_properties: Iterable[str],
    context_field_names: Iterable[str] = (),
) -> PropertyPlan:
    """Build the field selection and output mappings for a list of properties.

    Args:
        requested_properties: Output columns in the order they should appear
        context_field_names: Names resolvable from partition/run metadata

    Returns:
        PropertyPlan with deduplicated select fields and one mapping per
        distinct requested property.
    """
    context_field_names = list(context_field_names)
    select_fields: list[str] = []
    seen_fields: set[str] = set()
    mappings: list[PropertyMapping] = []
    seen_outputs: set[str] = set()

    for requested in requested_properties:
        if not requested or not requested.strip():
            continue
        descriptor = lookup_field(requested, context_field_names)
        if descriptor.output_name.lower() in seen_outputs:
            continue
        seen_outputs.add(descriptor.output_name.lower())

        mappings.append(
            PropertyMapping(
                output_name=descriptor.output_name,
                source_scope=descriptor.scope,
                source_field=descriptor.source_field,
                nested_field=descriptor.nested_field,
                requested_name=requested.strip(),
            )
        )
        if (
            descriptor.scope is SourceScope.RECORD
            and descriptor.source_field.lower() not in seen_fields
        ):
            seen_fields.add(descriptor.source_field.lower())
            select_fields.append(descriptor.source_field)

    return PropertyPlan(select_fields=tuple(select_fields), mappings=tuple(mappings))


def with_required(required: Iterable[str], requested: Iterable[str]) -> list[str]:
    """Prepend non-removable columns, dropping later case-insensitive duplicates."""
    result: list[str] = []
    seen: set[str] = set()
    for name in [*required, *requested]:
        if name.lower() not in seen:
            seen.add(name.lower())
            result.append(name)
    return result


def _get_ci(source: Mapping[str, Any], key: str) -> Any:
    if key in source:
        return source[key]
    lowered = key.lower()
    for candidate, value in source.items():
        if candidate.lower() == lowered:
            return value
    return None


def project_record(
    record: Mapping[str, Any],
    plan: PropertyPlan,
    context: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Apply a plan to one fetched record, missing values become None."""
    context = context or {}
    row: dict[str, Any] = {}
    for mapping in plan.mappings:
        source = context if mapping.source_scope is SourceScope.CONTEXT else record
        value = _get_ci(source, mapping.source_field)
        if mapping.nested_field is not None:
            value = _get_ci(value, mapping.nested_field) if isinstance(value, Mapping) else None
        row[mapping.output_name] = value
    return row


# Phrasings used by the directory API when a $select field is not supported
UNSUPPORTED_FIELD_PATTERNS = (
    re.compile(r"Could not find a property named '([^']+)'", re.IGNORECASE),
    re.compile(
        r"Property '([^']+)' does not exist as a declared property or extension property",
        re.IGNORECASE,
    ),
    re.compile(r"Invalid \$select propert(?:y|ies):?\s*'?([A-Za-z0-9_.]+)'?", re.IGNORECASE),
    re.compile(r"Unsupported select field:?\s*'?([A-Za-z0-9_.]+)'?", re.IGNORECASE),
)


def extract_unsupported_field(error: BaseException | str) -> str | None:
    """Return the field name an upstream error complains about, if any."""
    message = str(error)
    for pattern in UNSUPPORTED_FIELD_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1)
    return None
