"""Tests for the ledger document and record models."""

import re
from datetime import datetime, timezone

import pytest

from labkeeper.state.models import (
    DELETION_ORDER,
    BucketRecord,
    InstanceRecord,
    LedgerDocument,
    ResourceKind,
    SecurityGroupRecord,
    utc_timestamp,
)


class TestTimestamps:
    """Test timestamp formatting."""

    def test_second_precision_with_z_suffix(self):
        moment = datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert utc_timestamp(moment) == "2024-05-01T12:00:00Z"

    def test_default_is_now(self):
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", utc_timestamp())

    def test_record_defaults_created_at(self):
        record = SecurityGroupRecord(name="devops-sg")
        assert record.created_at.endswith("Z")


class TestResourceKind:
    """Test kind parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("ec2", ResourceKind.INSTANCE),
        ("instance", ResourceKind.INSTANCE),
        ("Firewall", ResourceKind.SECURITY_GROUP),
        ("security-group", ResourceKind.SECURITY_GROUP),
        ("credential", ResourceKind.KEYPAIR),
        ("keypair", ResourceKind.KEYPAIR),
        ("bucket", ResourceKind.BUCKET),
        ("s3", ResourceKind.BUCKET),
    ])
    def test_parse(self, value, expected):
        assert ResourceKind.parse(value) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown resource kind"):
            ResourceKind.parse("lambda")

    def test_deletion_order(self):
        assert DELETION_ORDER == (
            ResourceKind.INSTANCE,
            ResourceKind.KEYPAIR,
            ResourceKind.SECURITY_GROUP,
            ResourceKind.BUCKET,
        )


class TestLedgerDocument:
    """Test the ledger document."""

    def sample(self):
        return {
            "project": "aws-project",
            "region": "eu-central-1",
            "owner": "lab-team",
            "resources": {
                "ec2": {
                    "i-001": {
                        "name": "lab1",
                        "ami": "img-x",
                        "instance_type": "small",
                        "security_group": "fw-1",
                        "keypair": "cred-1",
                        "created_at": "2024-05-01T12:00:00Z",
                    }
                },
                "security_group": {"fw-1": {"name": "devops-sg", "created_at": "2024-05-01T12:00:00Z"}},
                "keypair": {"cred-1": {"name": "cred-1", "created_at": "2024-05-01T12:00:00Z", "note": "x"}},
                "s3": {"my-bucket": {"bucket": "my-bucket", "created_at": "2024-05-01T12:00:00Z"}},
                "lambda": {"fn-1": {"whatever": True}},
            },
        }

    def test_round_trip_preserves_unknown_fields_and_kinds(self):
        data = self.sample()
        assert LedgerDocument.from_dict(data).to_dict() == data

    def test_missing_created_at_is_not_invented(self):
        data = {
            "project": "p",
            "region": "r",
            "resources": {
                "security_group": {"sg-1": {"name": "devops-sg"}, "sg-2": {"name": "x", "created_at": None}},
                "keypair": {"cred-1": {"name": "cred-1"}},
            },
        }
        document = LedgerDocument.from_dict(data)

        assert document.get("security_group", "sg-1").created_at is None
        assert document.to_dict() == data

    def test_known_kinds_are_typed(self):
        document = LedgerDocument.from_dict(self.sample())
        assert isinstance(document.get("ec2", "i-001"), InstanceRecord)
        assert isinstance(document.get(ResourceKind.BUCKET, "my-bucket"), BucketRecord)

    def test_missing_kinds_are_empty(self):
        document = LedgerDocument.from_dict({"project": "p", "region": "r"})
        assert document.ids("ec2") == set()
        assert document.records(ResourceKind.KEYPAIR) == {}
        assert document.total() == 0

    def test_empty_has_every_kind(self):
        document = LedgerDocument.empty("p", "r")
        assert set(document.to_dict()["resources"]) == {"ec2", "security_group", "keypair", "s3"}

    def test_put_overwrites(self):
        document = LedgerDocument.empty("p", "r")
        document.put("security_group", "sg-1", SecurityGroupRecord(name="a"))
        document.put("firewall", "sg-1", SecurityGroupRecord(name="b"))
        assert document.get("security_group", "sg-1").name == "b"

    def test_put_rejects_wrong_record_type(self):
        document = LedgerDocument.empty("p", "r")
        with pytest.raises(TypeError):
            document.put("s3", "b", SecurityGroupRecord(name="a"))

    def test_discard(self):
        document = LedgerDocument.from_dict(self.sample())
        assert document.discard("s3", "my-bucket") is True
        assert document.discard("s3", "my-bucket") is False
        assert document.discard("ec2", "i-404") is False

    def test_find_by_name(self):
        document = LedgerDocument.from_dict(self.sample())
        assert document.find_by_name("security_group", "devops-sg") == "fw-1"
        assert document.find_by_name("s3", "my-bucket") == "my-bucket"
        assert document.find_by_name("security_group", "other") is None

    def test_created_at_is_last_field(self):
        record = InstanceRecord(
            name="lab1", ami="img-x", instance_type="small", security_group="fw-1", keypair="cred-1",
            created_at="2024-05-01T12:00:00Z",
        )
        assert list(record.to_wire()) == [
            "name", "ami", "instance_type", "security_group", "keypair", "created_at"
        ]
