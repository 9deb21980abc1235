"""Ledger document and per-kind resource records."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Set, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """UTC ISO-8601 timestamp with second precision, e.g. 2024-05-01T12:00:00Z."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class ResourceKind(str, Enum):
    """Resource kinds; values are the tags used in the ledger document."""

    INSTANCE = "ec2"
    SECURITY_GROUP = "security_group"
    KEYPAIR = "keypair"
    BUCKET = "s3"

    @classmethod
    def parse(cls, value: Union[str, "ResourceKind"]) -> "ResourceKind":
        """Accept a wire tag (``ec2``) or a descriptive alias (``instance``)."""
        if isinstance(value, ResourceKind):
            return value
        key = value.strip().lower().replace("-", "_")
        try:
            return cls(key)
        except ValueError:
            pass
        if key in _KIND_ALIASES:
            return _KIND_ALIASES[key]
        raise ValueError(
            f"Unknown resource kind '{value}'. "
            f"Expected one of: {', '.join(sorted(set(_KIND_ALIASES) | {k.value for k in cls}))}"
        )

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]


_KIND_ALIASES = {
    "instance": ResourceKind.INSTANCE,
    "instances": ResourceKind.INSTANCE,
    "firewall": ResourceKind.SECURITY_GROUP,
    "sg": ResourceKind.SECURITY_GROUP,
    "credential": ResourceKind.KEYPAIR,
    "key_pair": ResourceKind.KEYPAIR,
    "bucket": ResourceKind.BUCKET,
    "buckets": ResourceKind.BUCKET,
}

_KIND_LABELS = {
    ResourceKind.INSTANCE: "EC2 instance",
    ResourceKind.SECURITY_GROUP: "security group",
    ResourceKind.KEYPAIR: "key pair",
    ResourceKind.BUCKET: "S3 bucket",
}

# Cleanup order: instances release security groups; buckets are independent
DELETION_ORDER = (
    ResourceKind.INSTANCE,
    ResourceKind.KEYPAIR,
    ResourceKind.SECURITY_GROUP,
    ResourceKind.BUCKET,
)


class ResourceRecord(BaseModel):
    """Fields common to every tracked resource."""

    model_config = ConfigDict(extra="allow")

    created_at: Optional[str] = Field(default_factory=utc_timestamp, description="UTC creation timestamp")

    # Optional fields left out of the wire form when never set
    OMIT_WHEN_UNSET: ClassVar[Tuple[str, ...]] = ("created_at",)

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ResourceRecord":
        """Parse a stored record without inventing a missing timestamp."""
        record = cls.model_validate(data)
        if "created_at" not in data:
            record.created_at = None
            record.model_fields_set.discard("created_at")
        return record

    @property
    def display_name(self) -> str:
        return getattr(self, "name", "")

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with ``created_at`` last, matching the document layout."""
        data = self.model_dump()
        for name in self.OMIT_WHEN_UNSET:
            if data.get(name) is None and name not in self.model_fields_set:
                data.pop(name, None)
        if "created_at" in data:
            data["created_at"] = data.pop("created_at")
        return data


class InstanceRecord(ResourceRecord):
    """An EC2 instance; security group and key pair are weak references."""

    name: str
    ami: str
    instance_type: str
    security_group: str = Field(..., description="Security group id (reference, not ownership)")
    keypair: str = Field(..., description="Key pair name (reference, not ownership)")


class SecurityGroupRecord(ResourceRecord):
    """A security group (firewall rule set)."""

    name: str


class KeyPairRecord(ResourceRecord):
    """An SSH key pair; the name is also the local private key filename stem.

    ``key_file`` is set only when labkeeper itself wrote the private key, so
    cleanup never removes a file it did not create.
    """

    OMIT_WHEN_UNSET: ClassVar[Tuple[str, ...]] = ("created_at", "key_file")

    name: str
    key_file: Optional[str] = Field(None, description="Private key file written at creation")


class BucketRecord(ResourceRecord):
    """An S3 bucket tracked by name."""

    bucket: str

    @property
    def display_name(self) -> str:
        return self.bucket


RECORD_TYPES: Dict[ResourceKind, Type[ResourceRecord]] = {
    ResourceKind.INSTANCE: InstanceRecord,
    ResourceKind.SECURITY_GROUP: SecurityGroupRecord,
    ResourceKind.KEYPAIR: KeyPairRecord,
    ResourceKind.BUCKET: BucketRecord,
}


class LedgerDocument(BaseModel):
    """The JSON document recording every resource this tool believes it owns.

    Known kinds hold typed records. Kind maps this version does not know
    about, and unknown top-level fields, are carried through unchanged.
    """

    model_config = ConfigDict(extra="allow")

    project: str = Field(..., description="Project name")
    region: str = Field(..., description="AWS region")
    resources: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Kind tag -> resource id -> record"
    )

    @field_validator("resources", mode="before")
    @classmethod
    def _type_records(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            return value
        typed = {}
        for kind_tag, entries in value.items():
            record_type = RECORD_TYPES.get(_known_kind(kind_tag))
            if record_type is None or not isinstance(entries, dict):
                typed[kind_tag] = entries
                continue
            typed[kind_tag] = {
                resource_id: record if isinstance(record, ResourceRecord) else record_type.from_wire(record)
                for resource_id, record in entries.items()
            }
        return typed

    @classmethod
    def empty(cls, project: str, region: str) -> "LedgerDocument":
        """A new document with an empty map for every known kind."""
        return cls(
            project=project,
            region=region,
            resources={kind.value: {} for kind in ResourceKind},
        )

    def records(self, kind: Union[str, ResourceKind]) -> Dict[str, ResourceRecord]:
        """Records of one kind keyed by id; empty when the kind map is missing."""
        return self.resources.get(ResourceKind.parse(kind).value) or {}

    def ids(self, kind: Union[str, ResourceKind]) -> Set[str]:
        return set(self.records(kind))

    def get(self, kind: Union[str, ResourceKind], resource_id: str) -> Optional[ResourceRecord]:
        return self.records(kind).get(resource_id)

    def put(self, kind: Union[str, ResourceKind], resource_id: str, record: ResourceRecord) -> None:
        """Insert or overwrite a record."""
        kind = ResourceKind.parse(kind)
        expected = RECORD_TYPES[kind]
        if not isinstance(record, expected):
            raise TypeError(f"{kind.value} entries must be {expected.__name__}, got {type(record).__name__}")
        self.resources.setdefault(kind.value, {})[resource_id] = record

    def discard(self, kind: Union[str, ResourceKind], resource_id: str) -> bool:
        """Remove a record if present; returns whether anything was removed."""
        entries = self.resources.get(ResourceKind.parse(kind).value)
        if not entries or resource_id not in entries:
            return False
        del entries[resource_id]
        return True

    def find_by_name(self, kind: Union[str, ResourceKind], name: str) -> Optional[str]:
        """Id of the first record of this kind whose name matches."""
        for resource_id, record in self.records(kind).items():
            if record.display_name == name:
                return resource_id
        return None

    def total(self) -> int:
        return sum(len(self.records(kind)) for kind in ResourceKind)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation of the document."""
        data: Dict[str, Any] = {"project": self.project, "region": self.region}
        data.update(self.model_extra or {})
        data["resources"] = {
            kind_tag: _entries_to_wire(entries)
            for kind_tag, entries in self.resources.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerDocument":
        return cls.model_validate(data)


def _known_kind(tag: str) -> Optional[ResourceKind]:
    try:
        return ResourceKind(tag)
    except ValueError:
        return None


def _entries_to_wire(entries: Any) -> Any:
    if not isinstance(entries, dict):
        return entries
    return {
        resource_id: record.to_wire() if isinstance(record, ResourceRecord) else record
        for resource_id, record in entries.items()
    }
