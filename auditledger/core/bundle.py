"""
Ledger Bundles

An export bundle is a self-contained JSON document holding one
organization's chain, the roots covering it and a Merkle inclusion proof
for every anchored entry. Anyone holding a bundle can check it offline
with BundleVerifier (or tools/verify.py); no store access is needed.

Bundle layout:
    {
        "_meta":    {bundle_version, serialization_version, organization_id,
                     exported_at, entry_count, chain_valid_at_export},
        "entries":  [LedgerEntry, ...]          ascending seq
        "roots":    [LedgerRoot, ...]           overlapping the entries
        "proofs":   {"<seq>": MerkleProof}      anchored entries only
    }
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TYPE_CHECKING
from uuid import UUID

from pydantic import ValidationError

from ..observability import get_logger
from ..schemas import LedgerEntry, LedgerRoot
from .anchor import MerkleProof, RootAnchorService
from .hasher import Hasher
from .verifier import walk_chain

if TYPE_CHECKING:
    from ..db.store import LedgerStore


logger = get_logger(__name__)

BUNDLE_VERSION = 1


def export_bundle(store: "LedgerStore", organization_id: UUID) -> dict[str, Any]:
    """Export an organization's full chain with its roots and inclusion proofs."""
    entries = store.iter_chain(organization_id)
    anchors = RootAnchorService(store)

    roots: list[LedgerRoot] = []
    proofs: dict[str, dict] = {}
    if entries:
        roots = store.list_roots(entries[0].seq, entries[-1].seq)
        for entry in entries:
            proof = anchors.prove_entry(entry.seq)
            if proof is not None:
                proofs[str(entry.seq)] = proof.to_dict()

    chain_valid = walk_chain(organization_id, entries).ok

    logger.info(
        "Bundle exported",
        organization_id=str(organization_id),
        entry_count=len(entries),
        anchored=len(proofs),
    )
    return {
        "_meta": {
            "bundle_version": BUNDLE_VERSION,
            "serialization_version": Hasher.SERIALIZATION_VERSION,
            "organization_id": str(organization_id),
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "entry_count": len(entries),
            "chain_valid_at_export": chain_valid,
        },
        "entries": [e.to_export_dict() for e in entries],
        "roots": [r.model_dump(mode="json") for r in roots],
        "proofs": proofs,
    }


class BundleResult(str, Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INCOMPLETE = "INCOMPLETE"
    INVALID_FORMAT = "INVALID_FORMAT"


@dataclass
class BundleReport:
    result: BundleResult
    organization_id: str
    entry_count: int
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    broken_at_seq: int | None = None

    def to_dict(self) -> dict:
        return {
            "result": self.result.value,
            "organization_id": self.organization_id,
            "entry_count": self.entry_count,
            "checks_passed": self.checks_passed,
            "checks_failed": self.checks_failed,
            "warnings": self.warnings,
            "broken_at_seq": self.broken_at_seq,
        }


class BundleVerifier:
    """Checks an exported bundle: structure, chain, inclusion proofs."""

    REQUIRED_KEYS = ("_meta", "entries", "roots", "proofs")

    def __init__(self, bundle: Any):
        self.bundle = bundle
        self.checks_passed: list[str] = []
        self.checks_failed: list[str] = []
        self.warnings: list[str] = []
        self._entries: list[LedgerEntry] = []
        self._roots: dict[UUID, LedgerRoot] = {}
        self._organization_id: UUID | None = None
        self._broken_at_seq: int | None = None

    def verify(self) -> BundleReport:
        if not self._check_structure():
            return self._report(BundleResult.INVALID_FORMAT)

        self._check_meta()

        if not self._verify_chain():
            return self._report(BundleResult.TAMPERED)

        proofs_ok, proofs_complete = self._verify_proofs()
        if not proofs_ok:
            return self._report(BundleResult.TAMPERED)

        if not proofs_complete or not self._check_count():
            return self._report(BundleResult.INCOMPLETE)

        return self._report(BundleResult.VERIFIED)

    def _check_structure(self) -> bool:
        if not isinstance(self.bundle, dict):
            self.checks_failed.append("Bundle must be a JSON object")
            return False

        missing = [k for k in self.REQUIRED_KEYS if k not in self.bundle]
        if missing:
            self.checks_failed.append(f"Missing required keys: {missing}")
            return False

        if not isinstance(self.bundle["entries"], list) or not isinstance(self.bundle["roots"], list):
            self.checks_failed.append("'entries' and 'roots' must be arrays")
            return False
        if not isinstance(self.bundle["proofs"], dict):
            self.checks_failed.append("'proofs' must be an object")
            return False

        try:
            self._organization_id = UUID(str(self.bundle["_meta"]["organization_id"]))
            self._entries = [LedgerEntry.model_validate(e) for e in self.bundle["entries"]]
            roots = [LedgerRoot.model_validate(r) for r in self.bundle["roots"]]
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            self.checks_failed.append(f"Malformed bundle content: {e}")
            return False

        self._roots = {r.id: r for r in roots}
        self.checks_passed.append("Bundle structure valid")
        return True

    def _check_meta(self) -> None:
        version = self.bundle["_meta"].get("serialization_version")
        if version is not None and version != Hasher.SERIALIZATION_VERSION:
            self.warnings.append(
                f"Serialization version mismatch: bundle={version}, "
                f"verifier={Hasher.SERIALIZATION_VERSION}"
            )
        if self.bundle["_meta"].get("chain_valid_at_export") is False:
            self.warnings.append("Chain was already broken when this bundle was exported")

    def _verify_chain(self) -> bool:
        result = walk_chain(self._organization_id, self._entries)
        if not result.ok:
            self._broken_at_seq = result.broken_at_seq
            self.checks_failed.append(f"Chain broken at seq {result.broken_at_seq}: {result.reason}")
            return False
        self.checks_passed.append(f"All {result.entries_checked} entry hashes and links verified")
        return True

    def _verify_proofs(self) -> tuple[bool, bool]:
        """Returns (no proof is forged, every entry inside a root window has a proof)."""
        by_seq = {e.seq: e for e in self._entries}
        all_valid = True

        for key, raw in self.bundle["proofs"].items():
            try:
                proof = MerkleProof.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                self.checks_failed.append(f"Proof for seq {key}: malformed ({e})")
                all_valid = False
                continue

            entry = by_seq.get(proof.seq)
            root = self._roots.get(proof.root_id)
            if entry is None or entry.hash != proof.entry_hash:
                self.checks_failed.append(f"Proof for seq {proof.seq}: does not match bundled entry")
                all_valid = False
            elif root is None or root.root_hash != proof.root_hash:
                self.checks_failed.append(f"Proof for seq {proof.seq}: root not in bundle")
                all_valid = False
            elif not RootAnchorService.verify_proof(proof):
                self.checks_failed.append(f"Proof for seq {proof.seq}: does not reach root")
                all_valid = False

        if not all_valid:
            return False, False

        unproven = [
            e.seq for e in self._entries
            if any(r.first_seq <= e.seq <= r.last_seq for r in self._roots.values())
            and str(e.seq) not in self.bundle["proofs"]
        ]
        if unproven:
            self.checks_failed.append(f"Anchored entries without proofs: {unproven}")
            return True, False

        self.checks_passed.append(f"{len(self.bundle['proofs'])} inclusion proofs verified")
        return True, True

    def _check_count(self) -> bool:
        declared = self.bundle["_meta"].get("entry_count")
        if declared is not None and declared != len(self._entries):
            self.checks_failed.append(
                f"Bundle declares {declared} entries but contains {len(self._entries)}"
            )
            return False
        return True

    def _report(self, result: BundleResult) -> BundleReport:
        return BundleReport(
            result=result,
            organization_id=str(self._organization_id) if self._organization_id else "unknown",
            entry_count=len(self._entries),
            checks_passed=self.checks_passed,
            checks_failed=self.checks_failed,
            warnings=self.warnings,
            broken_at_seq=self._broken_at_seq,
        )
