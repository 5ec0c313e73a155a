"""
Attestation Chain.

Module: release_orchestrator/service/attestations.py

Every approval, stage result, abort and override for a change is recorded as a
signed attestation linked to its predecessor:

    hash      = SHA256(previous_hash || canonical_json(body))
    signature = HMAC-SHA256(signing_key, hash)

The first link of every chain uses GENESIS_HASH as previous_hash. Appends for
one change are serialized by a per-change lock, so concurrently completing
stages land in completion order with consecutive sequence numbers.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import os
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from .errors import ChainVerificationFailure
from .models import Attestation, ChainVerification, SubjectType

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class KeyManager:
    """Manages HMAC signing keys with rotation and revocation.

    Keys are loaded from:
      1. key_dir (directory of <key_id>.key files, plus revoked_keys.json)
      2. an explicit secret for the active key ID
      3. a development default
    """

    DEFAULT_KEY_ID = "release-key-v1"
    DEFAULT_SECRET = b"release-orchestrator-dev-key"

    def __init__(
        self,
        active_key_id: str = DEFAULT_KEY_ID,
        secret: Optional[str] = None,
        key_dir: Optional[str] = None,
    ) -> None:
        self._keys: Dict[str, bytes] = {}
        self._revoked: set[str] = set()
        self._active_key_id = active_key_id

        if key_dir and os.path.isdir(key_dir):
            self._load_key_dir(key_dir)
        if secret:
            self._keys[active_key_id] = secret.encode("utf-8")
        if active_key_id not in self._keys:
            logger.warning(
                f"No secret configured for signing key '{active_key_id}', "
                f"using development default"
            )
            self._keys[active_key_id] = self.DEFAULT_SECRET

    def _load_key_dir(self, key_dir: str) -> None:
        for fname in sorted(os.listdir(key_dir)):
            if fname.endswith(".key"):
                with open(os.path.join(key_dir, fname), "rb") as f:
                    self._keys[fname[:-4]] = f.read().strip()

        revoke_path = os.path.join(key_dir, "revoked_keys.json")
        if os.path.exists(revoke_path):
            with open(revoke_path, "r", encoding="utf-8") as f:
                revoked = json.load(f)
            if isinstance(revoked, list):
                self._revoked = set(revoked)

    @property
    def active_key_id(self) -> str:
        return self._active_key_id

    def add_key(self, key_id: str, secret: bytes) -> None:
        self._keys[key_id] = secret

    def revoke_key(self, key_id: str) -> None:
        """Revoke a key; attestations signed with it no longer verify."""
        self._revoked.add(key_id)

    def is_revoked(self, key_id: str) -> bool:
        return key_id in self._revoked

    def signing_key(self, key_id: Optional[str] = None) -> tuple[str, bytes]:
        """Return (key_id, secret) for signing."""
        key_id = key_id or self._active_key_id
        if key_id in self._revoked:
            raise ValueError(f"Signing key '{key_id}' is revoked")
        secret = self._keys.get(key_id)
        if secret is None:
            raise ValueError(f"Signing key '{key_id}' is not loaded")
        return key_id, secret

    def verification_key(self, key_id: str) -> Optional[bytes]:
        if key_id in self._revoked:
            return None
        return self._keys.get(key_id)


def canonicalize(data: Any) -> bytes:
    """Deterministic JSON encoding used for hashing."""
    return json.dumps(
        data, sort_keys=True, separators=(",", ":"), default=str
    ).encode("utf-8")


def _body(attestation_id: str, change_id: str, sequence: int, subject_type: str,
          subject: str, payload: Dict[str, Any], created_at: datetime,
          signer_key_id: str) -> Dict[str, Any]:
    return {
        "attestation_id": attestation_id,
        "change_id": change_id,
        "sequence": sequence,
        "subject_type": subject_type,
        "subject": subject,
        "payload": payload,
        "created_at": created_at.isoformat(),
        "signer_key_id": signer_key_id,
    }


def compute_hash(previous_hash: str, body: Dict[str, Any]) -> str:
    digest = hashlib.sha256()
    digest.update(previous_hash.encode("ascii"))
    digest.update(canonicalize(body))
    return digest.hexdigest()


def sign(secret: bytes, link_hash: str) -> str:
    return hmac.new(secret, link_hash.encode("ascii"), hashlib.sha256).hexdigest()


class AttestationChain:
    """
    Append-only, hash-chained attestation store, one linear chain per change.

    Features:
    - Signed, hash-linked records
    - Per-change single-writer appends
    - End-to-end verification with first divergent index
    - Snapshot/restore for persistence
    - Read-only cross-change projection
    """

    def __init__(self, key_manager: Optional[KeyManager] = None) -> None:
        self.key_manager = key_manager or KeyManager()
        self._chains: Dict[str, List[Attestation]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, change_id: str) -> asyncio.Lock:
        lock = self._locks.get(change_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[change_id] = lock
        return lock

    async def append(
        self,
        change_id: str,
        subject_type: SubjectType,
        subject: str,
        payload: Dict[str, Any],
        signer_key_id: Optional[str] = None,
    ) -> Attestation:
        """
        Append a signed attestation as the new head of a change's chain.

        Args:
            change_id: Change the attestation belongs to
            subject_type: Attestation subtype
            subject: Stage name, tier or state it describes
            payload: JSON-serializable summary (finding counts, decision, ...)
            signer_key_id: Key to sign with (active key if omitted)

        Returns:
            The stored attestation
        """
        async with self._lock_for(change_id):
            chain = self._chains.setdefault(change_id, [])
            previous_hash = chain[-1].hash if chain else GENESIS_HASH
            key_id, secret = self.key_manager.signing_key(signer_key_id)

            attestation_id = str(uuid4())
            created_at = datetime.utcnow()
            # Round-trip through JSON so the stored payload matches what gets hashed.
            payload = json.loads(canonicalize(payload))
            body = _body(
                attestation_id, change_id, len(chain), subject_type.value,
                subject, payload, created_at, key_id,
            )
            link_hash = compute_hash(previous_hash, body)

            attestation = Attestation(
                attestation_id=attestation_id,
                change_id=change_id,
                sequence=len(chain),
                subject_type=subject_type,
                subject=subject,
                payload=payload,
                created_at=created_at,
                previous_hash=previous_hash,
                hash=link_hash,
                signature=sign(secret, link_hash),
                signer_key_id=key_id,
            )
            chain.append(attestation)

        logger.debug(
            f"Appended attestation #{attestation.sequence} ({subject_type.value}:{subject}) "
            f"for change {change_id}"
        )
        return attestation

    def entries(self, change_id: str) -> List[Attestation]:
        return list(self._chains.get(change_id, []))

    def head(self, change_id: str) -> Optional[Attestation]:
        chain = self._chains.get(change_id)
        return chain[-1] if chain else None

    def get(self, change_id: str, attestation_id: str) -> Optional[Attestation]:
        for attestation in self._chains.get(change_id, []):
            if attestation.attestation_id == attestation_id:
                return attestation
        return None

    def verify_chain(self, change_id: str) -> ChainVerification:
        """
        Recompute every hash and signature of a change's chain.

        Returns:
            Verification result with the first divergent index on failure
        """
        chain = self._chains.get(change_id, [])
        expected_previous = GENESIS_HASH

        for index, attestation in enumerate(chain):
            reason = self._verify_link(change_id, attestation, index, expected_previous)
            if reason is not None:
                logger.error(
                    f"Attestation chain for change {change_id} broken at index "
                    f"{index}: {reason}"
                )
                return ChainVerification(
                    change_id=change_id,
                    valid=False,
                    length=len(chain),
                    broken_at_index=index,
                    reason=reason,
                )
            expected_previous = attestation.hash

        return ChainVerification(change_id=change_id, valid=True, length=len(chain))

    def _verify_link(
        self, change_id: str, attestation: Attestation, index: int, expected_previous: str
    ) -> Optional[str]:
        if attestation.change_id != change_id:
            return "change mismatch"
        if attestation.sequence != index:
            return f"sequence {attestation.sequence} != {index}"
        if attestation.previous_hash != expected_previous:
            return "previous hash mismatch"

        body = _body(
            attestation.attestation_id,
            attestation.change_id,
            attestation.sequence,
            attestation.subject_type.value,
            attestation.subject,
            attestation.payload,
            attestation.created_at,
            attestation.signer_key_id,
        )
        if compute_hash(expected_previous, body) != attestation.hash:
            return "hash mismatch"

        secret = self.key_manager.verification_key(attestation.signer_key_id)
        if secret is None:
            return f"unknown or revoked signer key '{attestation.signer_key_id}'"
        if not hmac.compare_digest(sign(secret, attestation.hash), attestation.signature):
            return "signature mismatch"
        return None

    def require_valid(self, change_id: str) -> ChainVerification:
        """
        Verify a chain and raise on any break.

        Raises:
            ChainVerificationFailure: If the chain does not verify
        """
        verification = self.verify_chain(change_id)
        if not verification.valid:
            raise ChainVerificationFailure(
                f"Attestation chain for change {change_id} broken at index "
                f"{verification.broken_at_index}: {verification.reason}",
                broken_at_index=verification.broken_at_index,
                change_id=change_id,
            )
        return verification

    def snapshot(
        self, change_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Serialized chains (all, or only the given changes)."""
        selected = self._chains if change_ids is None else {
            c: self._chains.get(c, []) for c in change_ids
        }
        return {
            change_id: [a.model_dump(mode="json") for a in chain]
            for change_id, chain in selected.items()
        }

    def restore(self, snapshot: Dict[str, List[Dict[str, Any]]]) -> None:
        """Replace in-memory chains with a persisted snapshot (not re-verified)."""
        self._chains = {
            change_id: [Attestation(**entry) for entry in entries]
            for change_id, entries in snapshot.items()
        }

    def restore_change(self, change_id: str, entries: List[Dict[str, Any]]) -> None:
        """Replace one change's chain with a persisted copy (not re-verified)."""
        self._chains[change_id] = [Attestation(**entry) for entry in entries]

    def projection(self) -> List[Dict[str, Any]]:
        """
        Read-only cross-change audit summary derived from the chains.

        Returns:
            One summary row per change, ordered by change ID
        """
        rows: List[Dict[str, Any]] = []
        for change_id in sorted(self._chains):
            chain = self._chains[change_id]
            counts = Counter(a.subject_type.value for a in chain)
            head = chain[-1] if chain else None
            rows.append(
                {
                    "change_id": change_id,
                    "length": len(chain),
                    "counts": dict(counts),
                    "overrides": counts.get(SubjectType.EMERGENCY_OVERRIDE.value, 0),
                    "refused": counts.get(SubjectType.REJECTED_REQUEST.value, 0),
                    "head_subject": f"{head.subject_type.value}:{head.subject}" if head else None,
                    "head_hash": head.hash if head else None,
                    "last_recorded_at": head.created_at.isoformat() if head else None,
                }
            )
        return rows
