"""
Merkle Membership — Allowlist Commitment Verification.

The early access allowlist is committed as a single 32-byte root. A claimant
proves membership by supplying the sibling hashes on the path from their
leaf to the root.

PAIRING RULE:
- Parent = SHA-256(min(a, b) || max(a, b)), comparing raw bytes
- The same rule is used by `MerkleTree` to build roots and by `verify`
- An odd node at the end of a level is promoted unchanged

INVARIANTS:
- Verification is pure and side-effect free
- An empty proof NEVER verifies, even if the leaf equals the root
"""

from collections.abc import Sequence
from dataclasses import dataclass
from hashlib import sha256

from cardmint.models.allocation import normalize_address

HASH_SIZE = 32

# Exclusive upper bound of a 32-byte big-endian word
WORD_LIMIT = 1 << (8 * HASH_SIZE)


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Hash two nodes in sorted order."""
    if a <= b:
        return sha256(a + b).digest()
    return sha256(b + a).digest()


def hash_leaf(index: int, address: str, phase_tag: int) -> bytes:
    """
    Build the allowlist leaf for a claim.

    Layout: index (32 bytes, big-endian) || address (20 bytes) ||
    phase_tag (32 bytes, big-endian). Binding all three keeps a proof from
    being replayed for another index, claimant, or phase.

    Raises:
        ValueError: If index or phase_tag does not fit a 32-byte word, or the
            address is malformed
    """
    if not 0 <= index < WORD_LIMIT or not 0 <= phase_tag < WORD_LIMIT:
        raise ValueError("index and phase_tag must be in [0, 2**256)")
    address_bytes = bytes.fromhex(normalize_address(address)[2:])
    return sha256(
        index.to_bytes(32, "big") + address_bytes + phase_tag.to_bytes(32, "big")
    ).digest()


def verify(proof: Sequence[bytes], root: bytes, leaf: bytes) -> bool:
    """
    Check that `leaf` is committed to by `root`.

    Args:
        proof: Sibling hashes from the leaf level upward
        root: The committed allowlist root
        leaf: The claimant's leaf hash

    Returns:
        True only if the proof is non-empty and recomputes `root` exactly
    """
    if not proof:
        return False

    computed = leaf
    for sibling in proof:
        computed = hash_pair(computed, sibling)

    return computed == root


def parse_hash(value: str) -> bytes:
    """
    Decode a 0x-prefixed (or bare) 32-byte hex string.

    Raises:
        ValueError: If the value is not 32 bytes of hex
    """
    raw = value[2:] if value.startswith("0x") else value
    decoded = bytes.fromhex(raw)
    if len(decoded) != HASH_SIZE:
        raise ValueError(f"Expected {HASH_SIZE}-byte hash, got {len(decoded)} bytes")
    return decoded


def format_hash(value: bytes) -> str:
    """Render a hash as 0x-prefixed lowercase hex."""
    return "0x" + value.hex()


@dataclass(frozen=True)
class MerkleTree:
    """
    Allowlist tree built with the same pairing rule `verify` uses.

    `levels[0]` holds the leaves in claim order; the last level holds the root.
    """

    levels: tuple[tuple[bytes, ...], ...]

    @classmethod
    def from_leaves(cls, leaves: Sequence[bytes]) -> "MerkleTree":
        """
        Build a tree over `leaves`.

        Raises:
            ValueError: If fewer than two leaves are given (depth-0 trees
                have no non-empty proofs and are not supported)
        """
        if len(leaves) < 2:
            raise ValueError("An allowlist tree needs at least two leaves")

        levels = [tuple(leaves)]
        while len(levels[-1]) > 1:
            current = levels[-1]
            parents = []
            for i in range(0, len(current), 2):
                if i + 1 < len(current):
                    parents.append(hash_pair(current[i], current[i + 1]))
                else:
                    parents.append(current[i])
            levels.append(tuple(parents))

        return cls(levels=tuple(levels))

    @property
    def root(self) -> bytes:
        return self.levels[-1][0]

    @property
    def leaf_count(self) -> int:
        return len(self.levels[0])

    def proof(self, position: int) -> list[bytes]:
        """
        Sibling path for the leaf at `position`.

        Raises:
            IndexError: If position is outside the tree
        """
        if not 0 <= position < self.leaf_count:
            raise IndexError(f"Leaf position {position} out of range")

        path = []
        for level in self.levels[:-1]:
            sibling = position ^ 1
            if sibling < len(level):
                path.append(level[sibling])
            position //= 2
        return path
