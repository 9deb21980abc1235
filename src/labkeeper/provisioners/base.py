"""Base handler interface shared by every resource kind."""

from abc import ABC
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from labkeeper.state.ledger import StateLedger
from labkeeper.state.models import ResourceKind, ResourceRecord
from labkeeper.utils.errors import LabkeeperError, ProviderRequestFailed
from labkeeper.utils.logging import get_logger
from labkeeper.utils.retry import RetryStrategy

logger = get_logger(__name__)

PROVIDER_ERRORS = (ClientError, BotoCoreError)


class ChangeType(Enum):
    """Type of change a planned action would make."""
    CREATE = "create"
    DELETE = "delete"
    SKIP = "skip"


class DeleteOutcome(Enum):
    """Result of a ledger-aware delete."""
    DELETED = "deleted"
    NOT_TRACKED = "not_tracked"


@dataclass
class PlannedAction:
    """One step a dry run reports instead of performing."""
    kind: ResourceKind
    change_type: ChangeType
    description: str
    resource_id: Optional[str] = None

    def __str__(self) -> str:
        target = f" {self.resource_id}" if self.resource_id else ""
        return f"[{self.change_type.value}] {self.kind.label}{target}: {self.description}"


class BaseHandler(ABC):
    """Base class for all resource handlers.

    A handler performs provider calls for one kind and keeps the ledger in
    step: entries are written only after a provider create succeeded and
    removed only after a delete succeeded or the resource was already gone.
    """

    kind: ResourceKind

    def __init__(self, ledger: StateLedger, clients, tags: Optional[Dict[str, str]] = None):
        """Initialize handler.

        Args:
            ledger: State ledger recording tracked resources
            clients: Object providing ``get_client(service_name)``, normally an AWSClientManager
            tags: Tags applied to every resource created
        """
        self.ledger = ledger
        self.clients = clients
        self.tags = dict(tags or {})

    def is_tracked(self, resource_id: str) -> bool:
        return self.ledger.get(self.kind, resource_id) is not None

    def _provider_failure(self, error: Exception, operation: str,
                          resource_id: Optional[str] = None) -> ProviderRequestFailed:
        logger.error(f"{self.kind.label} {operation} failed: {error}")
        return ProviderRequestFailed(self.kind.value, error, resource_id=resource_id, operation=operation)

    def _track(self, resource_id: str, record: ResourceRecord) -> None:
        try:
            self.ledger.add(self.kind, resource_id, record)
        except LabkeeperError:
            logger.error(
                f"{self.kind.label} {resource_id} exists in AWS but could not be recorded in state; "
                f"it must be deleted manually"
            )
            raise

    def _untrack(self, resource_id: str) -> bool:
        return self.ledger.remove(self.kind, resource_id)

    def _tag_list(self, extra: Optional[Dict[str, str]] = None) -> List[Dict[str, str]]:
        tags = {**self.tags, **(extra or {})}
        return [{'Key': key, 'Value': value} for key, value in tags.items()]

    @staticmethod
    def _is_retryable(error: Exception) -> bool:
        return RetryStrategy().is_transient(error)
