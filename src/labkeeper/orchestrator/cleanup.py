"""Cleanup orchestrator: delete everything in the ledger in dependency order."""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from labkeeper.provisioners.bucket import BucketHandler
from labkeeper.provisioners.instance import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT, InstanceHandler
from labkeeper.provisioners.key_pair import KeyPairHandler
from labkeeper.provisioners.security_group import SecurityGroupHandler
from labkeeper.state.ledger import StateLedger
from labkeeper.state.models import DELETION_ORDER, LedgerDocument, ResourceKind
from labkeeper.utils.errors import (
    DeletionFailed,
    LabkeeperError,
    ProviderRequestFailed,
    ProvisioningTimeout,
    RemoteUnavailable,
)
from labkeeper.utils.logging import LogContext, get_logger
from labkeeper.utils.retry import BackoffMode, RetryStrategy

logger = get_logger(__name__)


class DeletionState(Enum):
    """Per-resource progress through a cleanup run."""
    TRACKED = "tracked"
    DELETION_REQUESTED = "deletion_requested"
    DELETED = "deleted"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


class CleanupStatus(Enum):
    """Overall outcome of a cleanup run."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    NOTHING_TO_DO = "nothing_to_do"


FAILED_STATES = (DeletionState.FAILED_RETRYABLE, DeletionState.FAILED_TERMINAL)

ProgressCallback = Callable[["ResourceOutcome"], None]


@dataclass
class CleanupPlan:
    """Resources per kind, in deletion order, as (id, name) pairs."""

    project: str
    region: str
    resources: Dict[ResourceKind, List[Tuple[str, str]]] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: LedgerDocument) -> "CleanupPlan":
        resources = {}
        for kind in DELETION_ORDER:
            resources[kind] = sorted(
                (resource_id, record.display_name)
                for resource_id, record in document.records(kind).items()
            )
        return cls(project=document.project, region=document.region, resources=resources)

    def ids(self, kind: ResourceKind) -> List[str]:
        return [resource_id for resource_id, _ in self.resources.get(kind, [])]

    def get_total_resources(self) -> int:
        return sum(len(entries) for entries in self.resources.values())

    def is_empty(self) -> bool:
        return self.get_total_resources() == 0


@dataclass
class ResourceOutcome:
    """What happened to one resource during a run."""

    kind: ResourceKind
    resource_id: str
    state: DeletionState = DeletionState.TRACKED
    attempts: int = 0
    error: Optional[LabkeeperError] = None
    duration: float = 0.0  # seconds

    def is_deleted(self) -> bool:
        return self.state == DeletionState.DELETED

    def is_failed(self) -> bool:
        return self.state in FAILED_STATES


@dataclass
class CleanupResult:
    """Accumulated per-resource outcomes of a cleanup run."""

    outcomes: List[ResourceOutcome] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    @property
    def deleted(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.is_deleted()]

    @property
    def failed(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.is_failed()]

    @property
    def status(self) -> CleanupStatus:
        if not self.outcomes:
            return CleanupStatus.NOTHING_TO_DO
        if not self.failed:
            return CleanupStatus.SUCCESS
        if not self.deleted:
            return CleanupStatus.FAILED
        return CleanupStatus.PARTIAL

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def get(self, kind: ResourceKind, resource_id: str) -> Optional[ResourceOutcome]:
        for outcome in self.outcomes:
            if outcome.kind == kind and outcome.resource_id == resource_id:
                return outcome
        return None

    def summary(self) -> str:
        """Multi-line human-readable summary."""
        if self.status == CleanupStatus.NOTHING_TO_DO:
            return "Nothing to clean up"

        lines = [
            f"Cleanup {self.status.value}: {len(self.deleted)} deleted, "
            f"{len(self.failed)} failed ({self.duration:.1f}s)"
        ]
        for outcome in self.failed:
            lines.append(f"  - {outcome.kind.label} {outcome.resource_id}: {outcome.error.message}")
        return "\n".join(lines)


class CleanupOrchestrator:
    """Deletes every tracked resource: instances, key pairs, security groups, buckets.

    Instances are terminated first and waited on, because a security group
    cannot be deleted while a terminating instance still holds it. Each
    successful deletion is removed from the ledger immediately, so an
    interrupted run can simply be repeated. One resource failing never stops
    the run; its ledger entry stays for the next run.
    """

    def __init__(
        self,
        ledger: StateLedger,
        instances: InstanceHandler,
        key_pairs: KeyPairHandler,
        security_groups: SecurityGroupHandler,
        buckets: BucketHandler,
        instance_timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sg_max_attempts: int = 5,
        sg_retry_delay: float = 5.0,
        sg_backoff: BackoffMode = BackoffMode.FIXED,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the orchestrator.

        Args:
            ledger: State ledger to read and update
            instances: Instance handler
            key_pairs: Key pair handler
            security_groups: Security group handler
            buckets: Bucket handler
            instance_timeout: Seconds to wait for each instance to terminate
            poll_interval: Seconds between instance state polls
            sg_max_attempts: Delete attempts per security group
            sg_retry_delay: Seconds between security group attempts (base delay when exponential)
            sg_backoff: Fixed or exponential delay between security group attempts
            sleep: Sleep function, replaceable in tests
        """
        self.ledger = ledger
        self.instances = instances
        self.key_pairs = key_pairs
        self.security_groups = security_groups
        self.buckets = buckets
        self.instance_timeout = instance_timeout
        self.poll_interval = poll_interval
        self.sg_max_attempts = sg_max_attempts
        self.sg_retry_delay = sg_retry_delay
        self.sg_backoff = sg_backoff
        self.sleep = sleep
        self._progress: Optional[ProgressCallback] = None

    def plan(self) -> CleanupPlan:
        """Pull the ledger and list what a run would delete. Changes nothing."""
        return CleanupPlan.from_document(self.ledger.pull())

    def find_untracked(self, security_group_name: str, key_prefix: str, bucket_prefix: str) -> CleanupPlan:
        """List lab resources that exist in AWS but are missing from the ledger.

        Instances are matched by the instance handler's tags, security groups
        by name and key pairs and buckets by name prefix. Nothing is deleted
        and the ledger is not changed; a run never touches these resources.
        """
        document = self.ledger.pull()
        found = {
            ResourceKind.INSTANCE: self.instances.find_untracked(),
            ResourceKind.KEYPAIR: self.key_pairs.find_untracked(key_prefix),
            ResourceKind.SECURITY_GROUP: self.security_groups.find_untracked(security_group_name),
            ResourceKind.BUCKET: self.buckets.find_untracked(bucket_prefix),
        }
        untracked = CleanupPlan(project=document.project, region=document.region,
                                resources={kind: found[kind] for kind in DELETION_ORDER})
        if not untracked.is_empty():
            logger.info(f"Found {untracked.get_total_resources()} untracked lab resources; "
                        f"they must be deleted manually")
        return untracked

    def run(self, progress_callback: Optional[ProgressCallback] = None) -> CleanupResult:
        """Delete every tracked resource.

        Raises:
            RemoteUnavailable: If the ledger cannot be read at the start
        """
        start = time.monotonic()
        result = CleanupResult(start_time=datetime.now(timezone.utc))
        self._progress = progress_callback

        plan = self.plan()
        if plan.is_empty():
            logger.info("Ledger is empty; nothing to clean up")
        else:
            logger.info(f"Cleaning up {plan.get_total_resources()} resources "
                        f"for {plan.project} in {plan.region}")
            self._delete_instances(plan.ids(ResourceKind.INSTANCE), result)
            for key_name in plan.ids(ResourceKind.KEYPAIR):
                self._delete_one(result, ResourceKind.KEYPAIR, key_name,
                                 lambda name=key_name: self.key_pairs.delete(name))
            for group_id in plan.ids(ResourceKind.SECURITY_GROUP):
                self._delete_one(result, ResourceKind.SECURITY_GROUP, group_id,
                                 lambda gid=group_id: self.security_groups.delete(gid),
                                 retry=self._security_group_retry())
            for bucket in plan.ids(ResourceKind.BUCKET):
                self._delete_one(result, ResourceKind.BUCKET, bucket,
                                 lambda name=bucket: self.buckets.empty_and_delete(name))

        result.end_time = datetime.now(timezone.utc)
        result.duration = time.monotonic() - start
        logger.info(result.summary())
        return result

    def _delete_instances(self, instance_ids: List[str], result: CleanupResult) -> None:
        # Terminate all first so the waits overlap
        requested = []
        for instance_id in instance_ids:
            outcome = self._start(result, ResourceKind.INSTANCE, instance_id)
            outcome.attempts = 1
            with LogContext(logger, resource_id=instance_id, resource_type='ec2', operation='terminate'):
                try:
                    self.instances.terminate(instance_id)
                except LabkeeperError as e:
                    self._fail(outcome, e)
                    continue
            requested.append(outcome)

        for outcome in requested:
            started = time.monotonic()
            with LogContext(logger, resource_id=outcome.resource_id, resource_type='ec2', operation='wait'):
                try:
                    if not self.instances.wait_terminated(outcome.resource_id, self.instance_timeout,
                                                          self.poll_interval):
                        raise ProvisioningTimeout(outcome.resource_id, 'terminated', self.instance_timeout)
                    self.ledger.remove(ResourceKind.INSTANCE, outcome.resource_id)
                except LabkeeperError as e:
                    self._fail(outcome, e)
                else:
                    self._succeed(outcome)
            outcome.duration += time.monotonic() - started

    def _delete_one(self, result: CleanupResult, kind: ResourceKind, resource_id: str,
                    delete: Callable[[], None], retry: Optional[RetryStrategy] = None) -> None:
        outcome = self._start(result, kind, resource_id)
        retry = retry or RetryStrategy(max_retries=0, sleep=self.sleep)
        started = time.monotonic()

        with LogContext(logger, resource_id=resource_id, resource_type=kind.value, operation='delete'):
            try:
                retry.execute_with_retry(delete)
            except LabkeeperError as e:
                self._fail(outcome, e)
            else:
                self._succeed(outcome)
            finally:
                outcome.attempts = retry.attempts
                outcome.duration = time.monotonic() - started

    def _security_group_retry(self) -> RetryStrategy:
        retry_on = _retryable_deletion
        if self.sg_backoff == BackoffMode.FIXED:
            return RetryStrategy.fixed(self.sg_max_attempts, self.sg_retry_delay,
                                       retry_on=retry_on, sleep=self.sleep)
        return RetryStrategy(
            max_retries=max(self.sg_max_attempts - 1, 0),
            base_delay=self.sg_retry_delay,
            max_delay=self.sg_retry_delay * 2 ** max(self.sg_max_attempts - 2, 0),
            jitter=False,
            retry_on=retry_on,
            sleep=self.sleep,
        )

    def _start(self, result: CleanupResult, kind: ResourceKind, resource_id: str) -> ResourceOutcome:
        outcome = ResourceOutcome(kind=kind, resource_id=resource_id, state=DeletionState.DELETION_REQUESTED)
        result.outcomes.append(outcome)
        logger.info(f"Deleting {kind.label} {resource_id}")
        return outcome

    def _succeed(self, outcome: ResourceOutcome) -> None:
        outcome.state = DeletionState.DELETED
        logger.info(f"Deleted {outcome.kind.label} {outcome.resource_id}")
        self._notify(outcome)

    def _fail(self, outcome: ResourceOutcome, error: LabkeeperError) -> None:
        outcome.error = error
        outcome.state = (
            DeletionState.FAILED_RETRYABLE if _is_retryable_failure(error) else DeletionState.FAILED_TERMINAL
        )
        logger.error(f"Could not delete {outcome.kind.label} {outcome.resource_id}: {error.message}; "
                     f"it stays in state for the next run")
        self._notify(outcome)

    def _notify(self, outcome: ResourceOutcome) -> None:
        if self._progress:
            self._progress(outcome)


def _retryable_deletion(error: Exception) -> bool:
    return isinstance(error, DeletionFailed) and error.retryable


def _is_retryable_failure(error: LabkeeperError) -> bool:
    if isinstance(error, DeletionFailed):
        return error.retryable
    if isinstance(error, ProviderRequestFailed):
        return error.cause is not None and RetryStrategy().is_transient(error.cause)
    return isinstance(error, (ProvisioningTimeout, RemoteUnavailable))
