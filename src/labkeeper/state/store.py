"""Remote state store: one JSON object per project in an S3 bucket."""

from dataclasses import dataclass
from typing import Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from labkeeper.utils.errors import ConcurrentModification, ErrorContext, RemoteUnavailable, client_error_code
from labkeeper.utils.logging import get_logger
from labkeeper.utils.retry import RetryStrategy

logger = get_logger(__name__)

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict"}


@dataclass
class StoredObject:
    """Body and version token of the remote state object."""
    body: bytes
    etag: Optional[str] = None


class RemoteStateStore(Protocol):
    """Whole-object get/put against a durable blob store."""

    def get(self) -> Optional[StoredObject]:
        ...

    def put(self, body: bytes, if_match: Optional[str] = None, if_none_match: bool = False) -> Optional[str]:
        ...

    def describe(self) -> str:
        ...


class S3StateStore:
    """Stores the ledger document at ``s3://<bucket>/<key>``."""

    def __init__(
        self,
        s3_client,
        bucket_name: str,
        key: str,
        region: str,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """
        Initialize the store.

        Args:
            s3_client: Boto3 S3 client
            bucket_name: Bucket holding the state object
            key: Object key of the state document
            region: Region used when the bucket has to be created
            retry_strategy: Retry policy for transient failures
        """
        self.s3 = s3_client
        self.bucket_name = bucket_name
        self.key = key
        self.region = region
        self.retry = retry_strategy or RetryStrategy(max_retries=3, base_delay=1.0, max_delay=10.0)

    def describe(self) -> str:
        return f"s3://{self.bucket_name}/{self.key}"

    def get(self) -> Optional[StoredObject]:
        """Fetch the state object, or None if it does not exist.

        Raises:
            RemoteUnavailable: If the store cannot be read after retries
        """
        try:
            response = self.retry.execute_with_retry(
                self.s3.get_object, Bucket=self.bucket_name, Key=self.key
            )
            body = response["Body"].read()
        except ClientError as e:
            if client_error_code(e) in NOT_FOUND_CODES:
                logger.debug(f"State object not found: {self.describe()}")
                return None
            raise self._unavailable("read", e)
        except (BotoCoreError, ConnectionError, TimeoutError) as e:
            raise self._unavailable("read", e)

        return StoredObject(body=body, etag=response.get("ETag"))

    def put(self, body: bytes, if_match: Optional[str] = None, if_none_match: bool = False) -> Optional[str]:
        """Replace the state object.

        Args:
            body: Complete serialized document
            if_match: Only write if the current object has this ETag
            if_none_match: Only write if no object exists yet

        Returns:
            ETag of the written object

        Raises:
            ConcurrentModification: If a write precondition failed
            RemoteUnavailable: If the store cannot be written after retries
        """
        params = {
            "Bucket": self.bucket_name,
            "Key": self.key,
            "Body": body,
            "ContentType": "application/json",
        }
        if if_match:
            params["IfMatch"] = if_match
        elif if_none_match:
            params["IfNoneMatch"] = "*"

        try:
            response = self.retry.execute_with_retry(self.s3.put_object, **params)
        except ClientError as e:
            if client_error_code(e) in PRECONDITION_CODES:
                raise ConcurrentModification(
                    f"State object {self.describe()} was changed by another writer",
                    context=ErrorContext(operation="put_state"),
                    cause=e,
                )
            raise self._unavailable("write", e)
        except (BotoCoreError, ConnectionError, TimeoutError) as e:
            raise self._unavailable("write", e)

        return response.get("ETag")

    def ensure_bucket(self) -> bool:
        """Create the state bucket with versioning and encryption if missing.

        Returns:
            True if the bucket was created
        """
        try:
            self.s3.head_bucket(Bucket=self.bucket_name)
            logger.debug(f"State bucket exists: {self.bucket_name}")
            return False
        except ClientError as e:
            if client_error_code(e) not in {"404", "NoSuchBucket", "NotFound"}:
                raise self._unavailable("access", e)
        except (BotoCoreError, ConnectionError, TimeoutError) as e:
            raise self._unavailable("access", e)

        logger.info(f"Creating state bucket: {self.bucket_name}")
        try:
            if self.region == "us-east-1":
                self.s3.create_bucket(Bucket=self.bucket_name)
            else:
                self.s3.create_bucket(
                    Bucket=self.bucket_name,
                    CreateBucketConfiguration={"LocationConstraint": self.region},
                )

            self.s3.put_bucket_versioning(
                Bucket=self.bucket_name,
                VersioningConfiguration={"Status": "Enabled"},
            )
            self.s3.put_bucket_encryption(
                Bucket=self.bucket_name,
                ServerSideEncryptionConfiguration={
                    "Rules": [
                        {"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
                    ]
                },
            )
            self.s3.put_public_access_block(
                Bucket=self.bucket_name,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
        except ClientError as e:
            raise self._unavailable("create", e)

        logger.info(f"Created state bucket: {self.bucket_name}")
        return True

    def _unavailable(self, action: str, error: Exception) -> RemoteUnavailable:
        code = client_error_code(error)
        detail = f" ({code})" if code else ""
        return RemoteUnavailable(
            f"Could not {action} remote state {self.describe()}{detail}: {error}",
            context=ErrorContext(operation=f"{action}_state"),
            cause=error,
        )
