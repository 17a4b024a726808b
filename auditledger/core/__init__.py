# Core ledger services
from .errors import (
    LedgerError,
    ImmutableRecordViolation,
    ChainBrokenAtSeq,
    SequenceAllocationFailure,
    HashComputationFailure,
    BackfillOrderError,
)
from .hasher import Hasher, CanonicalSerializationError, LEDGER_HASH_SALT
from .classifier import classify
from .sequencer import Sequencer, InMemorySequencer
from .guard import ImmutabilityGuard
from .ledger import LedgerService, LedgerConfig
from .autolog import AutoLogger, MutationRule, DEFAULT_RULES
from .verifier import ChainVerifier, VerificationResult
from .anchor import RootAnchorService, MerkleTree, MerkleProof
from .anchor_scheduler import AnchorScheduler, AnchorConfig
from .backfill import backfill_legacy_entries
from .bundle import export_bundle, BundleVerifier, BundleReport, BundleResult

__all__ = [
    "LedgerError",
    "ImmutableRecordViolation",
    "ChainBrokenAtSeq",
    "SequenceAllocationFailure",
    "HashComputationFailure",
    "BackfillOrderError",
    "Hasher",
    "CanonicalSerializationError",
    "LEDGER_HASH_SALT",
    "classify",
    "Sequencer",
    "InMemorySequencer",
    "ImmutabilityGuard",
    "LedgerService",
    "LedgerConfig",
    "AutoLogger",
    "MutationRule",
    "DEFAULT_RULES",
    "ChainVerifier",
    "VerificationResult",
    "RootAnchorService",
    "MerkleTree",
    "MerkleProof",
    "AnchorScheduler",
    "AnchorConfig",
    "backfill_legacy_entries",
    "export_bundle",
    "BundleVerifier",
    "BundleReport",
    "BundleResult",
]
