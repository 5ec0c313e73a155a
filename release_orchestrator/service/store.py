"""
JSON state store.

Persists pipeline runs and attestation chains as one snapshot document so the
CLI and service can pick up where a previous process left off.

Several processes may share one snapshot (the service plus any number of
`releasectl` invocations). Every write is a read-modify-write of the document
under an exclusive file lock, and only replaces the changes it was given:

- `save()` refuses to overwrite a change whose chain head moved since the
  writer last read it (ConcurrentModification)
- a running pipeline holds a lease renewed by heartbeat; other processes file
  an abort request instead of touching its chain
"""

import json
import logging
import os
import sys
import tempfile
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .errors import ConcurrentModification
from .models import PipelineRun

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def chain_head(entries: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    """Hash of the last serialized attestation, None for an empty chain."""
    return entries[-1]["hash"] if entries else None


class JsonStateStore:
    """Snapshot persistence for runs and chains."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Exclusive cross-process lock; never held across an await."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a+") as fd:
            if sys.platform == "win32":
                import msvcrt

                fd.seek(0)
                msvcrt.locking(fd.fileno(), msvcrt.LK_LOCK, 1)
            else:
                import fcntl

                fcntl.flock(fd.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                if sys.platform == "win32":
                    import msvcrt

                    fd.seek(0)
                    msvcrt.locking(fd.fileno(), msvcrt.LK_UNLCK, 1)
                else:
                    import fcntl

                    fcntl.flock(fd.fileno(), fcntl.LOCK_UN)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": SNAPSHOT_VERSION, "runs": [], "chains": {}}

        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported state snapshot version: {version}")
        return data

    def _write(self, document: Dict[str, Any]) -> None:
        """Atomically replace the snapshot."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    def load(self) -> Tuple[List[PipelineRun], Dict[str, List[Dict[str, Any]]]]:
        """
        Load the snapshot.

        Returns:
            Tuple of (pipeline runs, attestation chain snapshot)
        """
        data = self._read()
        runs = [PipelineRun(**entry) for entry in data.get("runs", [])]
        logger.debug(f"Loaded {len(runs)} pipeline run(s) from {self.path}")
        return runs, data.get("chains", {})

    def load_change(
        self, change_id: str
    ) -> Tuple[Optional[PipelineRun], List[Dict[str, Any]]]:
        """Load one change's run and serialized chain."""
        data = self._read()
        for entry in data.get("runs", []):
            if entry["change"]["change_id"] == change_id:
                return PipelineRun(**entry), data.get("chains", {}).get(change_id, [])
        return None, []

    def save(
        self,
        runs: List[PipelineRun],
        chains: Dict[str, List[Dict[str, Any]]],
        expected_heads: Optional[Dict[str, Optional[str]]] = None,
    ) -> None:
        """
        Merge runs and chains into the snapshot, leaving other changes untouched.

        Args:
            runs: Runs to write
            chains: Serialized chains of those runs
            expected_heads: Chain head each change had when the writer last read
                it; a mismatch means another process wrote in between

        Raises:
            ConcurrentModification: If a change moved on since the writer read it
        """
        with self.locked():
            document = self._read()
            stored_chains = document.setdefault("chains", {})

            for change_id, expected in (expected_heads or {}).items():
                current = chain_head(stored_chains.get(change_id))
                if current != expected:
                    raise ConcurrentModification(
                        f"Change {change_id} was modified by another process; "
                        f"reload and retry",
                        change_id=change_id,
                    )

            by_id = {entry["change"]["change_id"]: entry for entry in document.get("runs", [])}
            for run in runs:
                by_id[run.change_id] = run.model_dump(mode="json")
            document["runs"] = list(by_id.values())
            stored_chains.update(chains)
            self._write(document)
        logger.debug(f"Saved {len(runs)} pipeline run(s) to {self.path}")

    # ------------------------------------------------------------------
    # Cross-process run coordination
    # ------------------------------------------------------------------

    def acquire_lease(self, change_id: str, owner: str, ttl: float) -> bool:
        """Claim the right to run a change; False if a live owner holds it."""
        with self.locked():
            document = self._read()
            leases = document.setdefault("leases", {})
            lease = leases.get(change_id)
            if lease and lease["owner"] != owner and self._is_fresh(lease, ttl):
                return False
            leases[change_id] = {"owner": owner, "heartbeat": datetime.utcnow().isoformat()}
            document.get("abort_requests", {}).pop(change_id, None)
            self._write(document)
        return True

    def renew_lease(self, change_id: str, owner: str) -> None:
        with self.locked():
            document = self._read()
            lease = document.get("leases", {}).get(change_id)
            if lease is None or lease["owner"] != owner:
                return
            lease["heartbeat"] = datetime.utcnow().isoformat()
            self._write(document)

    def release_lease(self, change_id: str, owner: Optional[str] = None) -> None:
        """Drop a change's lease (any owner's if `owner` is None) and its abort request."""
        with self.locked():
            document = self._read()
            leases = document.get("leases", {})
            lease = leases.get(change_id)
            if lease is not None and (owner is None or lease["owner"] == owner):
                del leases[change_id]
            document.get("abort_requests", {}).pop(change_id, None)
            self._write(document)

    def lease_holder(self, change_id: str, ttl: float) -> Optional[str]:
        """Owner of a live lease on the change, if any."""
        lease = self._read().get("leases", {}).get(change_id)
        if lease and self._is_fresh(lease, ttl):
            return lease["owner"]
        return None

    def request_abort(self, change_id: str, requested_by: str, reason: str) -> None:
        """Ask the process running a change to abort it."""
        with self.locked():
            document = self._read()
            document.setdefault("abort_requests", {})[change_id] = {
                "requested_by": requested_by,
                "reason": reason,
                "requested_at": datetime.utcnow().isoformat(),
            }
            self._write(document)

    def pending_abort(self, change_id: str) -> Optional[Dict[str, Any]]:
        return self._read().get("abort_requests", {}).get(change_id)

    @staticmethod
    def _is_fresh(lease: Dict[str, Any], ttl: float) -> bool:
        heartbeat = datetime.fromisoformat(lease["heartbeat"])
        return datetime.utcnow() - heartbeat < timedelta(seconds=ttl)
