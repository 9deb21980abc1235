"""Security group handler: create, ingress rules and retry-aware delete."""

from typing import Iterable, List, Optional, Tuple

from labkeeper.provisioners.base import PROVIDER_ERRORS, BaseHandler, ChangeType, PlannedAction
from labkeeper.state.models import ResourceKind, SecurityGroupRecord
from labkeeper.utils.errors import DeletionFailed, ErrorPolicy, client_error_code
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DESCRIPTION = "Managed by labkeeper"

NOT_FOUND_CODES = {'InvalidGroup.NotFound', 'InvalidGroupId.NotFound'}
IN_USE_CODES = {'DependencyViolation', 'InvalidGroup.InUse'}
DUPLICATE_RULE_CODE = 'InvalidPermission.Duplicate'


class SecurityGroupHandler(BaseHandler):
    """Handler for EC2 security groups."""

    kind = ResourceKind.SECURITY_GROUP

    def __init__(self, ledger, clients, tags=None):
        super().__init__(ledger, clients, tags)
        self.ec2 = clients.get_client('ec2')

    def plan_create(self, name: str, ingress: Iterable[Tuple[int, str]] = ()) -> List[PlannedAction]:
        """Actions `create` plus `authorize_ingress` would take for this group.

        Args:
            name: Security group name
            ingress: (port, cidr) pairs to open

        Returns:
            Planned actions; a SKIP action when the name is already tracked
        """
        existing = self.find_tracked(name)
        if existing:
            return [PlannedAction(self.kind, ChangeType.SKIP, f"'{name}' already tracked", existing)]

        actions = [PlannedAction(self.kind, ChangeType.CREATE, f"create '{name}'")]
        for port, cidr in ingress:
            actions.append(
                PlannedAction(self.kind, ChangeType.CREATE, f"allow tcp/{port} from {cidr}")
            )
        return actions

    def create(self, name: str, description: str = DEFAULT_DESCRIPTION) -> str:
        """Create a security group and track it.

        Returns:
            The new group id

        Raises:
            ProviderRequestFailed: If AWS rejected the request; nothing is tracked
        """
        params = {'GroupName': name, 'Description': description}
        if self.tags:
            params['TagSpecifications'] = [
                {'ResourceType': 'security-group', 'Tags': self._tag_list({'Name': name})}
            ]

        try:
            response = self.ec2.create_security_group(**params)
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'create') from e

        group_id = response['GroupId']
        logger.info(f"Created security group {name} ({group_id})")
        self._track(group_id, SecurityGroupRecord(name=name))
        return group_id

    def authorize_ingress(
        self,
        group_id: str,
        port: int,
        cidr: str,
        protocol: str = 'tcp',
        policy: ErrorPolicy = ErrorPolicy.WARN_AND_CONTINUE
    ) -> bool:
        """Open one inbound port.

        A rule that already exists counts as success.

        Returns:
            True if the rule is in place, False if it failed under WARN_AND_CONTINUE

        Raises:
            ProviderRequestFailed: If the call failed under FAIL_FAST
        """
        try:
            self.ec2.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[{
                    'IpProtocol': protocol,
                    'FromPort': port,
                    'ToPort': port,
                    'IpRanges': [{'CidrIp': cidr}],
                }]
            )
        except PROVIDER_ERRORS as e:
            if client_error_code(e) == DUPLICATE_RULE_CODE:
                logger.info(f"Rule {protocol}/{port} from {cidr} already exists on {group_id}")
                return True
            if policy == ErrorPolicy.FAIL_FAST:
                raise self._provider_failure(e, 'authorize_ingress', group_id) from e
            logger.warning(f"Could not open {protocol}/{port} from {cidr} on {group_id}: {e}")
            return False

        logger.info(f"Opened {protocol}/{port} from {cidr} on {group_id}")
        return True

    def find_tracked(self, name: str) -> Optional[str]:
        """Id of a tracked group with this name, if any."""
        return self.ledger.find_by_name(self.kind, name)

    def find_untracked(self, name: str) -> List[Tuple[str, str]]:
        """(id, name) of groups called `name` that the ledger does not track. Read-only.

        Raises:
            ProviderRequestFailed: If the lookup failed
        """
        try:
            response = self.ec2.describe_security_groups(
                Filters=[{'Name': 'group-name', 'Values': [name]}]
            )
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'describe') from e

        tracked = self.ledger.list(self.kind)
        return sorted(
            (group['GroupId'], group['GroupName'])
            for group in response.get('SecurityGroups', [])
            if group['GroupId'] not in tracked
        )

    def delete(self, group_id: str) -> None:
        """Make one delete attempt and untrack the group on success.

        Raises:
            DeletionFailed: retryable while the group is still in use
        """
        try:
            self.ec2.delete_security_group(GroupId=group_id)
            logger.info(f"Deleted security group {group_id}")
        except PROVIDER_ERRORS as e:
            code = client_error_code(e)
            if code in NOT_FOUND_CODES:
                logger.info(f"Security group {group_id} already gone")
            else:
                retryable = code in IN_USE_CODES or self._is_retryable(e)
                raise DeletionFailed(self.kind.value, group_id, retryable=retryable, cause=e) from e

        self._untrack(group_id)
