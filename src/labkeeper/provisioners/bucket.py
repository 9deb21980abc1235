"""S3 bucket handler.

Buckets are created by provider-level steps (create, versioning, tags,
sample upload) that the ledger does not model; the handler records or
forgets the bucket name separately through ``track``/``untrack``.
"""

import re
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from labkeeper.provisioners.base import PROVIDER_ERRORS, BaseHandler, ChangeType, PlannedAction
from labkeeper.state.models import BucketRecord, ResourceKind
from labkeeper.utils.errors import ConfigurationError, DeletionFailed, client_error_code
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)

BUCKET_NAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9-]*[a-z0-9]$')
NOT_FOUND_CODES = {'NoSuchBucket', '404', 'NotFound'}
RETRYABLE_CODES = {'BucketNotEmpty', 'OperationAborted'}


def validate_bucket_name(name: str) -> List[str]:
    """Problems with a bucket name; empty when it is valid."""
    problems = []
    if len(name) < 3:
        problems.append("must be at least 3 characters")
    if len(name) > 63:
        problems.append("must be at most 63 characters")
    if not BUCKET_NAME_PATTERN.match(name):
        problems.append("may only contain lowercase letters, numbers and hyphens, "
                        "and must start and end with a letter or number")
    if '--' in name:
        problems.append("cannot contain consecutive hyphens")
    return problems


def generate_bucket_name(prefix: str, user: str, now: Optional[datetime] = None) -> str:
    """``<prefix><epoch>-<user>`` reduced to a valid bucket name."""
    moment = now or datetime.now(timezone.utc)
    clean_user = re.sub(r'[^a-z0-9-]+', '-', user.lower())
    clean_user = re.sub(r'-{2,}', '-', clean_user).strip('-') or 'user'
    name = f"{prefix}{int(moment.timestamp())}-{clean_user}"
    return re.sub(r'-{2,}', '-', name.lower())[:63].rstrip('-')


class BucketHandler(BaseHandler):
    """Handler for S3 buckets."""

    kind = ResourceKind.BUCKET

    def __init__(self, ledger, clients, region: str, tags=None):
        super().__init__(ledger, clients, tags)
        self.s3 = clients.get_client('s3')
        self.region = region

    def track(self, name: str) -> None:
        self._track(name, BucketRecord(bucket=name))

    def untrack(self, name: str) -> bool:
        return self._untrack(name)

    def plan_create(self, name: str, sample_key: Optional[str] = None) -> List[PlannedAction]:
        actions = [
            PlannedAction(self.kind, ChangeType.CREATE, f"create '{name}' in {self.region}"),
            PlannedAction(self.kind, ChangeType.CREATE, "enable versioning", name),
        ]
        if self.tags:
            tags = ', '.join(f"{k}={v}" for k, v in self.tags.items())
            actions.append(PlannedAction(self.kind, ChangeType.CREATE, f"tag with {tags}", name))
        if sample_key:
            actions.append(PlannedAction(self.kind, ChangeType.CREATE, f"upload {sample_key}", name))
        return actions

    def create_bucket(self, name: str, versioning: bool = True,
                      tags: Optional[Dict[str, str]] = None) -> str:
        """Create a bucket. Does not track it.

        Tagging is best effort; a tagging failure is logged as a warning.

        Raises:
            ConfigurationError: If the name is not a valid bucket name
            ProviderRequestFailed: If creating the bucket or enabling versioning failed
        """
        problems = validate_bucket_name(name)
        if problems:
            raise ConfigurationError(
                f"Invalid bucket name '{name}'",
                errors=[{'loc': ('bucket',), 'msg': problem} for problem in problems],
            )

        params = {'Bucket': name}
        if self.region != 'us-east-1':
            params['CreateBucketConfiguration'] = {'LocationConstraint': self.region}

        try:
            self.s3.create_bucket(**params)
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'create', name) from e
        logger.info(f"Created bucket {name} in {self.region}")

        if versioning:
            try:
                self.s3.put_bucket_versioning(
                    Bucket=name,
                    VersioningConfiguration={'Status': 'Enabled'}
                )
            except PROVIDER_ERRORS as e:
                raise self._provider_failure(e, 'enable_versioning', name) from e
            logger.info(f"Enabled versioning on {name}")

        tag_set = {**self.tags, **(tags or {})}
        if tag_set:
            try:
                self.s3.put_bucket_tagging(
                    Bucket=name,
                    Tagging={'TagSet': [{'Key': k, 'Value': v} for k, v in tag_set.items()]}
                )
            except PROVIDER_ERRORS as e:
                logger.warning(f"Could not tag bucket {name}: {e}")

        return name

    def upload_text(self, name: str, key: str, body: str) -> None:
        """Upload a small text object.

        Raises:
            ProviderRequestFailed: If the upload failed
        """
        try:
            self.s3.put_object(Bucket=name, Key=key, Body=body.encode('utf-8'), ContentType='text/plain')
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'upload', name) from e
        logger.info(f"Uploaded s3://{name}/{key}")

    def empty_and_delete(self, name: str) -> None:
        """Delete every artifact in the bucket, then the bucket, then untrack it.

        Object versions and delete markers are removed first, then unfinished
        multipart uploads are aborted; the bucket delete is attempted last.

        Raises:
            DeletionFailed: If anything could not be deleted; the entry is kept
        """
        try:
            removed = self._delete_versions(name)
            aborted = self._abort_multipart_uploads(name)
            logger.info(f"Emptied bucket {name}: {removed} versions/markers, {aborted} uploads")
            self.s3.delete_bucket(Bucket=name)
            logger.info(f"Deleted bucket {name}")
        except PROVIDER_ERRORS as e:
            code = client_error_code(e)
            if code not in NOT_FOUND_CODES:
                retryable = code in RETRYABLE_CODES or self._is_retryable(e)
                raise DeletionFailed(self.kind.value, name, retryable=retryable, cause=e) from e
            logger.info(f"Bucket {name} already gone")

        self._untrack(name)

    def find_untracked(self, prefix: str) -> List[Tuple[str, str]]:
        """Buckets whose name starts with `prefix` and that are not tracked. Read-only."""
        try:
            response = self.s3.list_buckets()
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'list') from e

        tracked = self.ledger.list(self.kind)
        return sorted(
            (bucket['Name'], bucket['Name'])
            for bucket in response.get('Buckets', [])
            if bucket['Name'].startswith(prefix) and bucket['Name'] not in tracked
        )

    def remaining_artifacts(self, name: str) -> int:
        """Number of object versions, delete markers and uploads left in the bucket."""
        count = 0
        paginator = self.s3.get_paginator('list_object_versions')
        for page in paginator.paginate(Bucket=name):
            count += len(page.get('Versions', [])) + len(page.get('DeleteMarkers', []))
        paginator = self.s3.get_paginator('list_multipart_uploads')
        for page in paginator.paginate(Bucket=name):
            count += len(page.get('Uploads', []))
        return count

    def _delete_versions(self, name: str) -> int:
        removed = 0
        paginator = self.s3.get_paginator('list_object_versions')
        for page in paginator.paginate(Bucket=name):
            # Versions first, then delete markers
            for entries in (page.get('Versions', []), page.get('DeleteMarkers', [])):
                if not entries:
                    continue
                objects = [{'Key': entry['Key'], 'VersionId': entry['VersionId']} for entry in entries]
                response = self.s3.delete_objects(
                    Bucket=name,
                    Delete={'Objects': objects, 'Quiet': True}
                )
                errors = response.get('Errors', [])
                if errors:
                    first = errors[0]
                    raise DeletionFailed(
                        self.kind.value, name, retryable=True,
                        reason=f"{len(errors)} objects not deleted, e.g. {first.get('Key')}: "
                               f"{first.get('Code')} {first.get('Message', '')}".rstrip(),
                    )
                removed += len(objects)
        return removed

    def _abort_multipart_uploads(self, name: str) -> int:
        aborted = 0
        paginator = self.s3.get_paginator('list_multipart_uploads')
        for page in paginator.paginate(Bucket=name):
            for upload in page.get('Uploads', []):
                self.s3.abort_multipart_upload(
                    Bucket=name,
                    Key=upload['Key'],
                    UploadId=upload['UploadId']
                )
                aborted += 1
        return aborted


def sample_file_body(bucket: str, region: str, user: str) -> str:
    """Contents of the welcome file uploaded into new buckets."""
    return (
        "Welcome to the Automation Lab!\n"
        "This file was uploaded by labkeeper.\n"
        f"Created: {time.strftime('%Y-%m-%d %H:%M:%S %Z')}\n"
        f"Bucket: {bucket}\n"
        f"Region: {region}\n"
        f"User: {user}\n"
    )
