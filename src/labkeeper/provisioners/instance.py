"""EC2 instance handler: launch, wait for state, terminate."""

import time
from typing import Callable, Dict, List, Optional, Tuple

from labkeeper.provisioners.base import (
    PROVIDER_ERRORS,
    BaseHandler,
    ChangeType,
    DeleteOutcome,
    PlannedAction,
)
from labkeeper.state.models import InstanceRecord, ResourceKind
from labkeeper.utils.errors import (
    DeletionFailed,
    ProvisioningError,
    ProvisioningTimeout,
    client_error_code,
)
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)

NOT_FOUND_CODES = {'InvalidInstanceID.NotFound', 'InvalidInstanceID.Malformed'}
DEAD_STATES = {'shutting-down', 'terminated'}
LIVE_STATES = {'pending', 'running', 'shutting-down', 'stopping', 'stopped'}

AMAZON_LINUX_2_FILTER = 'amzn2-ami-hvm-*-x86_64-gp2'
DEFAULT_TIMEOUT = 600.0
DEFAULT_POLL_INTERVAL = 15.0


class InstanceHandler(BaseHandler):
    """Handler for EC2 instances.

    ``create`` returns as soon as AWS accepted the launch; waiting for a
    state is a separate, optional call bounded by a timeout.
    """

    kind = ResourceKind.INSTANCE

    def __init__(
        self,
        ledger,
        clients,
        tags=None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__(ledger, clients, tags)
        self.ec2 = clients.get_client('ec2')
        self.sleep = sleep
        self.clock = clock

    def plan_create(self, name: str, image: str, size: str,
                    security_group_id: str, key_name: str) -> List[PlannedAction]:
        return [
            PlannedAction(
                self.kind,
                ChangeType.CREATE,
                f"launch '{name}' ({size}, {image}) with security group {security_group_id} "
                f"and key pair {key_name}",
            )
        ]

    def create(
        self,
        name: str,
        image: str,
        size: str,
        security_group_id: str,
        key_name: str,
        tags: Optional[Dict[str, str]] = None
    ) -> str:
        """Launch one instance and track it.

        Args:
            name: Value of the Name tag
            image: AMI id
            size: Instance type
            security_group_id: Security group to attach
            key_name: Key pair to install
            tags: Extra tags on top of the handler's tags

        Returns:
            The instance id

        Raises:
            ProviderRequestFailed: If AWS rejected the launch; nothing is tracked
        """
        try:
            response = self.ec2.run_instances(
                ImageId=image,
                InstanceType=size,
                MinCount=1,
                MaxCount=1,
                SecurityGroupIds=[security_group_id],
                KeyName=key_name,
                TagSpecifications=[
                    {'ResourceType': 'instance', 'Tags': self._tag_list({'Name': name, **(tags or {})})}
                ],
            )
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'create') from e

        instance_id = response['Instances'][0]['InstanceId']
        logger.info(f"Launched instance {name} ({instance_id})")

        self._track(instance_id, InstanceRecord(
            name=name,
            ami=image,
            instance_type=size,
            security_group=security_group_id,
            keypair=key_name,
        ))
        return instance_id

    def describe_state(self, instance_id: str) -> Optional[str]:
        """Current state name, or None if AWS no longer knows the instance."""
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except PROVIDER_ERRORS as e:
            if client_error_code(e) in NOT_FOUND_CODES:
                return None
            raise self._provider_failure(e, 'describe', instance_id) from e
        instance = self._first_instance(response)
        return instance['State']['Name'] if instance else None

    def wait_running(self, instance_id: str, timeout: float = DEFAULT_TIMEOUT,
                     poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        """Block until the instance is running.

        Raises:
            ProvisioningTimeout: If it is not running within `timeout` seconds
            ProvisioningError: If it disappeared or started terminating
        """
        deadline = self.clock() + timeout
        while True:
            state = self.describe_state(instance_id)
            if state == 'running':
                logger.info(f"Instance {instance_id} is running")
                return
            if state is None or state in DEAD_STATES:
                raise ProvisioningError(
                    f"Instance {instance_id} is {state or 'gone'} and will never be running"
                )
            if self.clock() >= deadline:
                raise ProvisioningTimeout(instance_id, 'running', timeout, last_state=state)
            logger.debug(f"Instance {instance_id} is {state}; waiting {poll_interval:.0f}s")
            self.sleep(poll_interval)

    def terminate(self, instance_id: str) -> bool:
        """Request termination.

        Returns:
            False if the instance no longer exists

        Raises:
            DeletionFailed: If AWS refused the request
        """
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
        except PROVIDER_ERRORS as e:
            if client_error_code(e) in NOT_FOUND_CODES:
                logger.info(f"Instance {instance_id} already gone")
                return False
            raise DeletionFailed(self.kind.value, instance_id, retryable=self._is_retryable(e), cause=e) from e

        logger.info(f"Termination requested for instance {instance_id}")
        return True

    def wait_terminated(self, instance_id: str, timeout: float = DEFAULT_TIMEOUT,
                        poll_interval: float = DEFAULT_POLL_INTERVAL) -> bool:
        """Block until the instance is terminated or unknown to AWS.

        Returns:
            True once terminated, False if `timeout` elapsed first
        """
        deadline = self.clock() + timeout
        while True:
            state = self.describe_state(instance_id)
            if state is None or state == 'terminated':
                logger.info(f"Instance {instance_id} is terminated")
                return True
            if self.clock() >= deadline:
                logger.warning(f"Instance {instance_id} still {state} after {timeout:.0f}s")
                return False
            logger.debug(f"Instance {instance_id} is {state}; waiting {poll_interval:.0f}s")
            self.sleep(poll_interval)

    def delete(self, instance_id: str, timeout: float = DEFAULT_TIMEOUT,
               poll_interval: float = DEFAULT_POLL_INTERVAL) -> DeleteOutcome:
        """Terminate a tracked instance, wait for it, then untrack it.

        An id that is not in the ledger is left alone: no provider call and no
        ledger write.

        Raises:
            DeletionFailed: If termination was refused
            ProvisioningTimeout: If it did not terminate in time; the entry is kept
        """
        if not self.is_tracked(instance_id):
            logger.info(f"Instance {instance_id} is not tracked; nothing to delete")
            return DeleteOutcome.NOT_TRACKED

        self.terminate(instance_id)
        if not self.wait_terminated(instance_id, timeout, poll_interval):
            raise ProvisioningTimeout(instance_id, 'terminated', timeout)

        self._untrack(instance_id)
        return DeleteOutcome.DELETED

    def find_untracked(self, tags: Optional[Dict[str, str]] = None) -> List[Tuple[str, str]]:
        """(id, Name tag) of live instances carrying `tags` that the ledger does not track.

        Defaults to the handler's own tags. With no tags to match nothing is
        returned. Read-only.

        Raises:
            ProviderRequestFailed: If the lookup failed
        """
        tags = self.tags if tags is None else tags
        if not tags:
            return []

        filters = [{'Name': f"tag:{key}", 'Values': [value]} for key, value in tags.items()]
        filters.append({'Name': 'instance-state-name', 'Values': sorted(LIVE_STATES)})

        found = []
        try:
            paginator = self.ec2.get_paginator('describe_instances')
            for page in paginator.paginate(Filters=filters):
                for reservation in page.get('Reservations', []):
                    found.extend(reservation.get('Instances', []))
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'describe') from e

        tracked = self.ledger.list(self.kind)
        return sorted(
            (instance['InstanceId'], _name_tag(instance))
            for instance in found
            if instance['InstanceId'] not in tracked
        )

    def resolve_latest_image(self, name_filter: str = AMAZON_LINUX_2_FILTER) -> str:
        """Newest available Amazon-owned AMI matching `name_filter`.

        Raises:
            ProviderRequestFailed: If the lookup call failed
            ProvisioningError: If no image matched
        """
        try:
            response = self.ec2.describe_images(
                Owners=['amazon'],
                Filters=[
                    {'Name': 'name', 'Values': [name_filter]},
                    {'Name': 'state', 'Values': ['available']},
                ]
            )
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'describe_images') from e

        images = sorted(response.get('Images', []), key=lambda image: image['CreationDate'])
        if not images:
            raise ProvisioningError(f"No available AMI matches {name_filter}")

        image_id = images[-1]['ImageId']
        logger.info(f"Resolved AMI {image_id} ({images[-1].get('Name', name_filter)})")
        return image_id

    def get_addresses(self, instance_id: str) -> Tuple[Optional[str], Optional[str]]:
        """(public_ip, private_ip); either is None when not assigned."""
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'describe', instance_id) from e
        instance = self._first_instance(response) or {}
        return instance.get('PublicIpAddress'), instance.get('PrivateIpAddress')

    @staticmethod
    def _first_instance(response: dict) -> Optional[dict]:
        for reservation in response.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                return instance
        return None


def _name_tag(instance: dict) -> str:
    for tag in instance.get('Tags', []):
        if tag['Key'] == 'Name':
            return tag['Value']
    return ''
