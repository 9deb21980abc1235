"""Resource handlers: one per tracked resource kind."""

from labkeeper.provisioners.base import BaseHandler, ChangeType, DeleteOutcome, PlannedAction
from labkeeper.provisioners.security_group import SecurityGroupHandler
from labkeeper.provisioners.key_pair import KeyPairHandler
from labkeeper.provisioners.instance import InstanceHandler
from labkeeper.provisioners.bucket import (
    BucketHandler,
    generate_bucket_name,
    sample_file_body,
    validate_bucket_name,
)

__all__ = [
    'BaseHandler',
    'ChangeType',
    'DeleteOutcome',
    'PlannedAction',
    'SecurityGroupHandler',
    'KeyPairHandler',
    'InstanceHandler',
    'BucketHandler',
    'generate_bucket_name',
    'sample_file_body',
    'validate_bucket_name',
]
