"""Ledger document, remote store and ledger access."""

from labkeeper.state.models import (
    DELETION_ORDER,
    RECORD_TYPES,
    BucketRecord,
    InstanceRecord,
    KeyPairRecord,
    LedgerDocument,
    ResourceKind,
    ResourceRecord,
    SecurityGroupRecord,
    utc_timestamp,
)
from labkeeper.state.store import RemoteStateStore, S3StateStore, StoredObject
from labkeeper.state.ledger import ConsistencyMode, StateLedger

__all__ = [
    'DELETION_ORDER',
    'RECORD_TYPES',
    'BucketRecord',
    'InstanceRecord',
    'KeyPairRecord',
    'LedgerDocument',
    'ResourceKind',
    'ResourceRecord',
    'SecurityGroupRecord',
    'utc_timestamp',
    'RemoteStateStore',
    'S3StateStore',
    'StoredObject',
    'ConsistencyMode',
    'StateLedger',
]
