"""
Root Anchor Service

Periodically checkpoints a contiguous window of the global sequence
into a LedgerRoot: a single Merkle root committing to the hash of every
chained entry in the window, plus the hash of the window's last entry.

Roots partition the sequence space:
    root[i + 1].first_seq == root[i].last_seq + 1

KEY CAPABILITY:
    "Given seq, prove its entry is in root X"

A root never covers a seq that an open transaction still holds, so a
late commit can never land inside an already-anchored window.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, TYPE_CHECKING
from uuid import UUID

from ..observability import get_logger, get_metrics
from ..schemas import LedgerEntry, LedgerRoot
from .hasher import Hasher

if TYPE_CHECKING:
    from ..db.store import LedgerStore


logger = get_logger(__name__)

HASH_METHOD = "merkle-sha256-v1"


@dataclass
class MerkleProof:
    """
    Proof that one entry is included in a root.

    Contains the sibling hashes needed to recompute the root.
    Self-contained: anyone can check it with verify_proof().
    """
    seq: int
    entry_hash: str
    proof_hashes: list[str]
    proof_directions: list[str]  # "left" or "right" for each step
    root_hash: str
    root_id: UUID
    first_seq: int
    last_seq: int

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "entry_hash": self.entry_hash,
            "proof_hashes": self.proof_hashes,
            "proof_directions": self.proof_directions,
            "root_hash": self.root_hash,
            "root_id": str(self.root_id),
            "first_seq": self.first_seq,
            "last_seq": self.last_seq,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict) -> "MerkleProof":
        return cls(
            seq=int(data["seq"]),
            entry_hash=data["entry_hash"],
            proof_hashes=list(data["proof_hashes"]),
            proof_directions=list(data["proof_directions"]),
            root_hash=data["root_hash"],
            root_id=UUID(str(data["root_id"])),
            first_seq=int(data["first_seq"]),
            last_seq=int(data["last_seq"]),
        )


class MerkleTree:
    """
    Binary SHA-256 Merkle tree over entry hashes, in seq order.

    An odd node at any level is paired with itself.
    """

    def __init__(self, leaves: list[str]):
        if not leaves:
            raise ValueError("Cannot create Merkle tree with no leaves")
        self._leaves = list(leaves)
        self._levels = self._build_levels(self._leaves)

    @staticmethod
    def _hash_pair(left: str, right: str) -> str:
        return hashlib.sha256(f"{left}{right}".encode("utf-8")).hexdigest()

    @classmethod
    def _build_levels(cls, leaves: list[str]) -> list[list[str]]:
        levels = [leaves]
        nodes = leaves
        while True:
            if len(nodes) % 2 == 1:
                nodes = nodes + [nodes[-1]]
            nodes = [cls._hash_pair(nodes[i], nodes[i + 1]) for i in range(0, len(nodes), 2)]
            levels.append(nodes)
            if len(nodes) == 1:
                return levels

    @property
    def root_hash(self) -> str:
        return self._levels[-1][0]

    def __len__(self) -> int:
        return len(self._leaves)

    def get_proof(self, index: int) -> tuple[list[str], list[str]]:
        """Sibling hashes and directions from leaf `index` up to the root."""
        if not 0 <= index < len(self._leaves):
            raise IndexError(f"Leaf index {index} out of range")

        proof_hashes = []
        proof_directions = []
        for level in self._levels[:-1]:
            if index % 2 == 0:
                sibling = index + 1 if index + 1 < len(level) else index
                proof_directions.append("right")
            else:
                sibling = index - 1
                proof_directions.append("left")
            proof_hashes.append(level[sibling])
            index //= 2
        return proof_hashes, proof_directions

    @staticmethod
    def verify_proof(
        leaf_hash: str,
        proof_hashes: list[str],
        proof_directions: list[str],
        expected_root: str,
    ) -> bool:
        if len(proof_hashes) != len(proof_directions):
            return False

        current = leaf_hash
        for sibling, direction in zip(proof_hashes, proof_directions):
            if direction == "left":
                current = MerkleTree._hash_pair(sibling, current)
            elif direction == "right":
                current = MerkleTree._hash_pair(current, sibling)
            else:
                return False
        return Hasher._constant_time_compare(current, expected_root)


def compute_root_hash(entries: list[LedgerEntry]) -> str:
    return MerkleTree([e.hash for e in entries]).root_hash


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RootAnchorService:
    """
    Creates and checks LedgerRoot checkpoints.

    Runs out-of-band over committed history (see AnchorScheduler); it
    never takes chain locks and never blocks appends.
    """

    def __init__(
        self,
        store: "LedgerStore",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._clock = clock

    def checkpoint(self) -> Optional[LedgerRoot]:
        """
        Anchor every resolved entry since the previous root.

        Returns the new root, or None when there is nothing new to anchor
        (or a concurrent checkpoint already anchored the same window).
        """
        previous = self._store.latest_root()
        first_seq = previous.last_seq + 1 if previous else 1

        high_water = self._store.high_water_seq()
        if high_water < first_seq:
            return None

        entries = self._store.entries_in_window(first_seq, high_water)
        if not entries:
            return None

        root = LedgerRoot(
            first_seq=first_seq,
            last_seq=entries[-1].seq,
            root_hash=compute_root_hash(entries),
            last_hash=entries[-1].hash,
            entry_count=len(entries),
            hash_method=HASH_METHOD,
            created_at=self._clock(),
        )

        if not self._store.append_root(root):
            logger.info("Checkpoint lost race, window already anchored", first_seq=first_seq)
            return None

        get_metrics().record_checkpoint()
        logger.info(
            "Checkpoint created",
            root_id=str(root.id),
            first_seq=root.first_seq,
            last_seq=root.last_seq,
            entry_count=root.entry_count,
        )
        return root

    def get_roots(
        self,
        first_seq: Optional[int] = None,
        last_seq: Optional[int] = None,
    ) -> list[LedgerRoot]:
        """Roots overlapping [first_seq, last_seq], ascending."""
        return self._store.list_roots(first_seq, last_seq)

    def prove_entry(self, seq: int) -> Optional[MerkleProof]:
        """
        Inclusion proof for the entry at `seq`.

        Returns None when the seq has no entry or is not anchored yet.
        """
        entry = self._store.get_entry(seq)
        root = self._store.root_for_seq(seq)
        if entry is None or root is None:
            return None

        entries = self._store.entries_in_window(root.first_seq, root.last_seq)
        index = next((i for i, e in enumerate(entries) if e.seq == seq), None)
        if index is None:
            return None

        proof_hashes, proof_directions = MerkleTree([e.hash for e in entries]).get_proof(index)
        return MerkleProof(
            seq=seq,
            entry_hash=entry.hash,
            proof_hashes=proof_hashes,
            proof_directions=proof_directions,
            root_hash=root.root_hash,
            root_id=root.id,
            first_seq=root.first_seq,
            last_seq=root.last_seq,
        )

    @staticmethod
    def verify_proof(proof: MerkleProof) -> bool:
        """Check a proof without any access to the store."""
        return MerkleTree.verify_proof(
            proof.entry_hash,
            proof.proof_hashes,
            proof.proof_directions,
            proof.root_hash,
        )

    def verify_root(self, root: LedgerRoot) -> bool:
        """Recompute a root from the store's current entries in its window."""
        entries = self._store.entries_in_window(root.first_seq, root.last_seq)
        if not entries or len(entries) != root.entry_count:
            return False
        if entries[-1].seq != root.last_seq:
            return False
        if not Hasher._constant_time_compare(entries[-1].hash, root.last_hash):
            return False
        # Stored hashes must still match the stored contents
        if not all(Hasher.verify_entry(e, e.prev_hash) for e in entries):
            return False
        return Hasher._constant_time_compare(compute_root_hash(entries), root.root_hash)
