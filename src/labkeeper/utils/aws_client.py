"""boto3 session and client management."""

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from typing import Optional, Dict, Any
from dataclasses import dataclass
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AWSCredentials:
    """Identity behind the active credentials."""
    account_id: str
    user_arn: str
    region: str
    profile: Optional[str] = None


class AWSClientManager:
    """Creates one boto3 session per run and caches its clients."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_attempts: int = 5
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_attempts: botocore-level retry attempts per API call
        """
        self.profile = profile
        self.region = region
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._credentials: Optional[AWSCredentials] = None

        self._boto_config = Config(
            retries={
                'mode': 'adaptive',
                'max_attempts': max_attempts
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create the boto3 session."""
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region

            self._session = boto3.Session(**kwargs)
            logger.debug(f"Created AWS session - Region: {self._session.region_name}, "
                         f"Profile: {self.profile or 'default'}")

        return self._session

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        Args:
            service_name: AWS service name (e.g., 'ec2', 's3')

        Returns:
            Boto3 client for the service
        """
        if service_name not in self._clients:
            self._clients[service_name] = self.session.client(service_name, config=self._boto_config)
            logger.debug(f"Created {service_name} client")

        return self._clients[service_name]

    def validate_credentials(self) -> AWSCredentials:
        """Check that usable credentials are configured.

        Returns:
            AWSCredentials with account and caller information

        Raises:
            NoCredentialsError: If no credentials are found
            PartialCredentialsError: If credentials are incomplete
            ClientError: If credentials are invalid
        """
        if self._credentials is not None:
            return self._credentials

        try:
            identity = self.get_client('sts').get_caller_identity()
        except NoCredentialsError:
            logger.error("No AWS credentials found. Run 'aws configure' first.")
            raise
        except PartialCredentialsError as e:
            logger.error(f"Incomplete AWS credentials: {e}")
            raise
        except ClientError as e:
            logger.error(f"Failed to validate AWS credentials: {e}")
            raise

        self._credentials = AWSCredentials(
            account_id=identity['Account'],
            user_arn=identity['Arn'],
            region=self.get_region(),
            profile=self.profile
        )
        logger.info(f"AWS credentials validated - Account: {self._credentials.account_id}, "
                    f"Region: {self._credentials.region}")
        return self._credentials

    def get_region(self) -> str:
        """Get the AWS region of the session."""
        return self.session.region_name
