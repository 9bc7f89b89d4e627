"""
Exception hierarchy for agent-ledger.

Record- and file-level problems are recovered inside the ingest layer and
only surface as warnings. The exceptions here are the ones that cross a
component boundary.
"""

from pathlib import Path
from typing import Optional


class LedgerError(Exception):
    """Base class for all agent-ledger errors."""


class UnknownDialectError(LedgerError):
    """No registered parser handles the given source."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        super().__init__(f"No parser registered for {self.path}")


class SourceReadError(LedgerError):
    """A source file could not be read (permissions, vanished, IO error)."""

    def __init__(self, path: Path | str, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Failed to read {self.path}: {reason}")


class StoreWriteError(LedgerError):
    """The transaction for one source file failed and was rolled back."""

    def __init__(self, path: Path | str, cause: Exception):
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"Store write failed for {self.path}: {cause}")


class ReadOnlyStoreError(LedgerError):
    """An ingest pass was requested without holding ingest capability."""

    def __init__(self, store_path: Path | str):
        self.store_path = Path(store_path)
        super().__init__(
            f"This process does not hold the ingest role for {self.store_path}"
        )


class IngestLockHeldError(LedgerError):
    """Another live process already holds the ingest role for this store."""

    def __init__(self, store_path: Path | str, owner: Optional[dict] = None):
        self.store_path = Path(store_path)
        self.owner = owner or {}
        pid = self.owner.get("pid")
        holder = f" (pid {pid})" if pid else ""
        super().__init__(
            f"Another process{holder} already holds the ingest role for {self.store_path}"
        )
