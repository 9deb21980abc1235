"""State ledger: pull-modify-push access to the remote ledger document."""

import json
from enum import Enum
from pathlib import Path
from typing import Optional, Set, Union

from pydantic import ValidationError

from labkeeper.state.models import LedgerDocument, ResourceKind, ResourceRecord
from labkeeper.state.store import RemoteStateStore
from labkeeper.utils.errors import ConcurrentModification, StateCorrupted
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)


class ConsistencyMode(Enum):
    """How concurrent writers from different processes are handled."""
    LAST_WRITER_WINS = "last_writer_wins"
    OPTIMISTIC = "optimistic"


class StateLedger:
    """Tracks provisioned resources in a JSON document held by a remote store.

    Every mutation pulls a fresh copy first, applies one change and pushes the
    whole document back. Across processes the default is last-writer-wins;
    ``ConsistencyMode.OPTIMISTIC`` makes each push conditional on the version
    seen by the preceding pull.
    """

    def __init__(
        self,
        store: RemoteStateStore,
        project: str,
        region: str,
        cache_path: Optional[Union[str, Path]] = None,
        consistency: ConsistencyMode = ConsistencyMode.LAST_WRITER_WINS
    ):
        """
        Initialize the ledger.

        Args:
            store: Remote state store holding the document
            project: Project name written into a new document
            region: Region written into a new document
            cache_path: Optional local file mirroring the working copy
            consistency: Cross-process write policy
        """
        self.store = store
        self.project = project
        self.region = region
        self.cache_path = Path(cache_path) if cache_path else None
        self.consistency = consistency
        self._document: Optional[LedgerDocument] = None
        self._etag: Optional[str] = None
        self._remote_exists = False

    @property
    def document(self) -> LedgerDocument:
        """The local working copy, pulled on first access."""
        if self._document is None:
            self.pull()
        return self._document

    @property
    def remote_exists(self) -> bool:
        """Whether the last pull found a remote document."""
        return self._remote_exists

    def pull(self) -> LedgerDocument:
        """Replace the working copy with the remote document.

        An absent remote object yields an empty document; nothing is written.

        Raises:
            RemoteUnavailable: If the store cannot be reached
            StateCorrupted: If the remote object is not a valid ledger document
        """
        stored = self.store.get()

        if stored is None:
            document = LedgerDocument.empty(self.project, self.region)
            etag = None
            exists = False
        else:
            document = self._parse(stored.body)
            etag = stored.etag
            exists = True

        self._document = document
        self._etag = etag
        self._remote_exists = exists
        self._write_cache()
        logger.debug(f"Pulled ledger from {self.store.describe()} ({document.total()} resources)")
        return document

    def push(self) -> None:
        """Write the working copy to the remote store, replacing the object.

        Raises:
            RemoteUnavailable: If the store cannot be reached
            ConcurrentModification: In optimistic mode, if another writer got there first
        """
        body = self.serialize(self.document)

        if self.consistency == ConsistencyMode.OPTIMISTIC:
            etag = self.store.put(body, if_match=self._etag, if_none_match=not self._remote_exists)
        else:
            etag = self.store.put(body)

        self._etag = etag
        self._remote_exists = True
        self._write_cache()
        logger.debug(f"Pushed ledger to {self.store.describe()}")

    def ensure_initialized(self) -> LedgerDocument:
        """Create the remote document if it does not exist yet. Idempotent."""
        self.pull()
        if self._remote_exists:
            return self._document

        logger.info(f"Initializing remote state at {self.store.describe()}")
        try:
            self.push()
        except ConcurrentModification:
            # Another process initialized it between our pull and push
            if self.consistency != ConsistencyMode.OPTIMISTIC:
                raise
            logger.info("Remote state was initialized concurrently; using it")
            self.pull()
        return self._document

    def add(self, kind: Union[str, ResourceKind], resource_id: str, record: ResourceRecord) -> None:
        """Record a resource, overwriting any entry with the same id."""
        kind = ResourceKind.parse(kind)
        self.pull()
        self._document.put(kind, resource_id, record)
        self.push()
        logger.info(f"Tracked {kind.label} {resource_id} in state")

    def remove(self, kind: Union[str, ResourceKind], resource_id: str) -> bool:
        """Forget a resource.

        Returns:
            True if an entry was removed, False if there was nothing to remove
        """
        kind = ResourceKind.parse(kind)
        self.pull()
        if not self._document.discard(kind, resource_id):
            logger.debug(f"{kind.label} {resource_id} not in state; nothing to remove")
            return False
        self.push()
        logger.info(f"Removed {kind.label} {resource_id} from state")
        return True

    def list(self, kind: Union[str, ResourceKind]) -> Set[str]:
        """Ids of all tracked resources of a kind."""
        self.pull()
        return self._document.ids(kind)

    def get(self, kind: Union[str, ResourceKind], resource_id: str) -> Optional[ResourceRecord]:
        self.pull()
        return self._document.get(kind, resource_id)

    def find_by_name(self, kind: Union[str, ResourceKind], name: str) -> Optional[str]:
        self.pull()
        return self._document.find_by_name(kind, name)

    @staticmethod
    def serialize(document: LedgerDocument) -> bytes:
        return json.dumps(document.to_dict(), indent=2).encode("utf-8")

    def _parse(self, body: bytes) -> LedgerDocument:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateCorrupted(f"Remote state {self.store.describe()} is not valid JSON: {e}", cause=e)

        if not isinstance(data, dict):
            raise StateCorrupted(f"Remote state {self.store.describe()} is not a JSON object")

        try:
            return LedgerDocument.from_dict(data)
        except ValidationError as e:
            raise StateCorrupted(f"Remote state {self.store.describe()} is not a valid ledger: {e}", cause=e)

    def _write_cache(self) -> None:
        if self.cache_path is None or self._document is None:
            return

        # The remote object is authoritative; a failed local copy is only a warning
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.cache_path.with_suffix(".tmp")
            temp_path.write_bytes(self.serialize(self._document))
            temp_path.replace(self.cache_path)
        except OSError as e:
            logger.warning(f"Could not update local state cache {self.cache_path}: {e}")
