"""Key pair handler: remote key pair plus the local private key file."""

import os
from pathlib import Path
from typing import List, Tuple, Union

from labkeeper.provisioners.base import PROVIDER_ERRORS, BaseHandler, ChangeType, PlannedAction
from labkeeper.state.models import KeyPairRecord, ResourceKind
from labkeeper.utils.errors import CredentialPersistFailure, DeletionFailed, client_error_code
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)

PRIVATE_KEY_MODE = 0o400
NOT_FOUND_CODES = {'InvalidKeyPair.NotFound'}


class KeyPairHandler(BaseHandler):
    """Handler for EC2 key pairs.

    The private key is written to ``<key_dir>/<name>.pem``, readable only by
    the owner. The local file is removed only after the remote key pair is
    confirmed deleted.
    """

    kind = ResourceKind.KEYPAIR

    def __init__(self, ledger, clients, key_dir: Union[str, Path] = '.', tags=None):
        super().__init__(ledger, clients, tags)
        self.ec2 = clients.get_client('ec2')
        self.key_dir = Path(key_dir)

    def key_path(self, name: str) -> Path:
        return self.key_dir / f"{name}.pem"

    def plan_create(self, name: str) -> List[PlannedAction]:
        return [
            PlannedAction(self.kind, ChangeType.CREATE, f"create '{name}'"),
            PlannedAction(self.kind, ChangeType.CREATE, f"save private key to {self.key_path(name)}"),
        ]

    def create(self, name: str) -> str:
        """Create a key pair, save its private key and track it.

        Returns:
            The key pair name

        Raises:
            ProviderRequestFailed: If AWS rejected the request; nothing is tracked
            CredentialPersistFailure: If the private key could not be saved; the
                key pair is tracked anyway so cleanup can remove it
        """
        params = {'KeyName': name}
        if self.tags:
            params['TagSpecifications'] = [
                {'ResourceType': 'key-pair', 'Tags': self._tag_list()}
            ]

        try:
            response = self.ec2.create_key_pair(**params)
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'create', name) from e

        logger.info(f"Created key pair {name}")

        path = self.key_path(name)
        persist_error = None
        try:
            self._write_private_key(path, response['KeyMaterial'])
            logger.info(f"Saved private key to {path}")
        except OSError as e:
            persist_error = e
            logger.error(f"Could not save private key for {name} to {path}: {e}")

        if persist_error is None:
            record = KeyPairRecord(name=name, key_file=str(path))
        else:
            record = KeyPairRecord(name=name)
        self._track(name, record)

        if persist_error is not None:
            raise CredentialPersistFailure(name, str(path), cause=persist_error)
        return name

    def find_untracked(self, prefix: str) -> List[Tuple[str, str]]:
        """(name, name) of key pairs starting with `prefix` that are not tracked. Read-only."""
        try:
            response = self.ec2.describe_key_pairs()
        except PROVIDER_ERRORS as e:
            raise self._provider_failure(e, 'describe') from e

        tracked = self.ledger.list(self.kind)
        return sorted(
            (key['KeyName'], key['KeyName'])
            for key in response.get('KeyPairs', [])
            if key['KeyName'].startswith(prefix) and key['KeyName'] not in tracked
        )

    def delete(self, name: str) -> None:
        """Delete the remote key pair, then the local key file, then untrack.

        Only a key file recorded as written by ``create`` is removed.

        Raises:
            DeletionFailed: If AWS refused the delete; the local file is kept
        """
        record = self.ledger.get(self.kind, name)

        try:
            self.ec2.delete_key_pair(KeyName=name)
            logger.info(f"Deleted key pair {name}")
        except PROVIDER_ERRORS as e:
            if client_error_code(e) in NOT_FOUND_CODES:
                logger.info(f"Key pair {name} already gone")
            else:
                raise DeletionFailed(self.kind.value, name, retryable=self._is_retryable(e), cause=e) from e

        key_file = getattr(record, 'key_file', None)
        path = Path(key_file) if key_file else None
        if path is not None and path.exists():
            try:
                path.unlink()
            except OSError as e:
                raise DeletionFailed(self.kind.value, name, retryable=False, cause=e,
                                     reason=f"could not remove local key file {path}: {e}") from e
            logger.info(f"Removed local key file {path}")

        self._untrack(name)

    @staticmethod
    def _write_private_key(path: Path, material: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # O_EXCL: never overwrite an existing key file
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(material)
            os.chmod(path, PRIVATE_KEY_MODE)
        except OSError:
            # No partial key file survives a failed write
            path.unlink(missing_ok=True)
            raise
