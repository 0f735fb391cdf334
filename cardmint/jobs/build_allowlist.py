"""
Build the early access allowlist commitment.

Reads one address per line (a leading `address` header and blank lines are
skipped), assigns each claimant its line position as index, and prints the
root together with every claimant's proof as JSON. Set the printed root as
CARDMINT_ALLOWLIST_ROOT and hand each claimant their entry.
"""

import argparse
import json
import logging
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from cardmint.config import EARLY_ACCESS_PHASE_TAG
from cardmint.models.allocation import normalize_address
from cardmint.services.merkle import MerkleTree, format_hash, hash_leaf

logger = logging.getLogger(__name__)


def read_addresses(lines: Iterable[str]) -> list[str]:
    """
    Parse allowlist lines into normalized addresses.

    Raises:
        ValueError: On a malformed or duplicate address
    """
    addresses: list[str] = []
    seen: set[str] = set()
    for raw in lines:
        line = raw.split(",")[0].strip()
        if not line or line.lower() == "address":
            continue
        address = normalize_address(line)
        if address in seen:
            raise ValueError(f"Duplicate allowlist address: {address}")
        seen.add(address)
        addresses.append(address)
    return addresses


def build_allowlist(
    addresses: list[str], phase_tag: int = EARLY_ACCESS_PHASE_TAG
) -> dict[str, Any]:
    """
    Commit to `addresses` and produce per-claimant proofs.

    Returns:
        Dict with hex `root` and a `claims` list of {index, address, proof}
    """
    leaves = [hash_leaf(index, address, phase_tag) for index, address in enumerate(addresses)]
    tree = MerkleTree.from_leaves(leaves)

    return {
        "root": format_hash(tree.root),
        "phase_tag": phase_tag,
        "claims": [
            {
                "index": index,
                "address": address,
                "proof": [format_hash(node) for node in tree.proof(index)],
            }
            for index, address in enumerate(addresses)
        ],
    }


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Build the early access allowlist root")
    parser.add_argument("allowlist", type=Path, help="File with one address per line")
    parser.add_argument(
        "--output",
        type=Path,
        help="Write JSON here instead of stdout",
    )
    args = parser.parse_args(argv)

    addresses = read_addresses(args.allowlist.read_text().splitlines())
    result = build_allowlist(addresses)
    logger.info("Built allowlist of %d addresses, root %s", len(addresses), result["root"])

    payload = json.dumps(result, indent=2)
    if args.output:
        args.output.write_text(payload)
        logger.info("Wrote allowlist to %s", args.output)
    else:
        sys.stdout.write(payload + "\n")


if __name__ == "__main__":
    main()
