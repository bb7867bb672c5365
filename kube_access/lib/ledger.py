"""CA issuance ledger: issued serials, revocations and bundle invalidations.

The ledger is the single owner of the CA's mutable state. Serial
uniqueness relies on ``record_issuance`` being an insert-if-absent
operation; revocation records are append-only.
"""

import fcntl
import json
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from .errors import NotFound
from .models import CertificateMetadata, RevocationRecord


def record_from_metadata(metadata: CertificateMetadata) -> RevocationRecord:
    """Build a RevocationRecord from a revoked ledger item."""
    return RevocationRecord(
        serial_number=metadata["serialNumber"],
        revoked_at=datetime.fromisoformat(metadata["revokedAt"]),
        reason=metadata.get("revocationReason", "cessation_of_operation"),
        identity_name=metadata["clientName"],
    )


class IssuanceLedger(ABC):
    """Storage contract for the CA issuance ledger."""

    @abstractmethod
    def record_issuance(self, metadata: CertificateMetadata) -> bool:
        """Insert metadata for a new serial.

        Returns:
            True if inserted, False if the serial was already issued
        """

    @abstractmethod
    def get(self, serial_number: str) -> CertificateMetadata | None:
        """Return the ledger item for a serial, or None."""

    @abstractmethod
    def active_certificates(self, identity_name: str | None = None) -> list[CertificateMetadata]:
        """Return active items, optionally only those issued to one identity."""

    @abstractmethod
    def revoke(self, serial_number: str, revoked_at: datetime, reason: str) -> RevocationRecord:
        """Mark a serial revoked and return its revocation record.

        Revoking an already revoked serial returns the original record.

        Raises:
            NotFound: If the serial was never issued
        """

    @abstractmethod
    def revocations(self) -> list[RevocationRecord]:
        """Return all revocation records ordered by revocation time."""

    @abstractmethod
    def invalidate_bundles(self, identity_name: str, invalidated_at: datetime) -> list[str]:
        """Stamp every certificate of an identity with a bundle invalidation time.

        Returns:
            Serial numbers that were stamped
        """


class InMemoryLedger(IssuanceLedger):
    """Process-local ledger guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, CertificateMetadata] = {}

    def record_issuance(self, metadata: CertificateMetadata) -> bool:
        with self._transaction():
            serial = metadata["serialNumber"]
            if serial in self._items:
                return False
            self._items[serial] = CertificateMetadata(**metadata)
            return True

    def get(self, serial_number: str) -> CertificateMetadata | None:
        with self._transaction(write=False):
            item = self._items.get(serial_number)
            return CertificateMetadata(**item) if item is not None else None

    def active_certificates(self, identity_name: str | None = None) -> list[CertificateMetadata]:
        with self._transaction(write=False):
            return [
                CertificateMetadata(**item)
                for item in sorted(self._items.values(), key=lambda i: i["issuedAt"])
                if item["status"] == "active"
                and (identity_name is None or item["clientName"] == identity_name)
            ]

    def revoke(self, serial_number: str, revoked_at: datetime, reason: str) -> RevocationRecord:
        with self._transaction():
            item = self._items.get(serial_number)
            if item is None:
                raise NotFound(f"serial {serial_number} was not issued by this CA")
            if item["status"] != "revoked":
                item["status"] = "revoked"
                item["revokedAt"] = revoked_at.isoformat()
                item["revocationReason"] = reason
            return record_from_metadata(item)

    def revocations(self) -> list[RevocationRecord]:
        with self._transaction(write=False):
            records = [record_from_metadata(i) for i in self._items.values() if i["status"] == "revoked"]
        return sorted(records, key=lambda r: r.revoked_at)

    def invalidate_bundles(self, identity_name: str, invalidated_at: datetime) -> list[str]:
        with self._transaction():
            serials = []
            for serial, item in self._items.items():
                if item["clientName"] == identity_name and "bundleInvalidatedAt" not in item:
                    item["bundleInvalidatedAt"] = invalidated_at.isoformat()
                    serials.append(serial)
            return serials

    @contextmanager
    def _transaction(self, write: bool = True) -> Iterator[None]:
        with self._lock:
            yield


class JsonFileLedger(InMemoryLedger):
    """Ledger persisted as a JSON document, for CAs kept on an operator host.

    Each operation reloads the file under an exclusive ``fcntl`` lock and
    writes it back atomically, so separate processes sharing the file still
    allocate unique serials.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self.lock_path = path.with_suffix(path.suffix + ".lock")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _transaction(self, write: bool = True) -> Iterator[None]:
        with self._lock, open(self.lock_path, "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                self._items = self._load()
                yield
                if write:
                    self._save()
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _load(self) -> dict[str, CertificateMetadata]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text())
        return {item["serialNumber"]: CertificateMetadata(**item) for item in data.get("certificates", [])}

    def _save(self) -> None:
        document = {
            "updatedAt": datetime.now(UTC).isoformat(),
            "certificates": list(self._items.values()),
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2))
        os.replace(tmp_path, self.path)
