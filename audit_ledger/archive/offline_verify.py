#!/usr/bin/env python3
"""Offline verification utility for audit ledger archives.

Uploaded next to every exported archive so the chain can be checked without
access to the ledger. Standard library only.

Usage:
    verify.py <audit-events-YYYY-MM-DD.jsonl.gz> [--chain-link HASH]

Exit codes:
    0  chain verified
    1  usage or input error
    2  hash mismatch (a record was altered)
    3  chain break (a record was removed, reordered or relinked)
"""

import argparse
import gzip
import hashlib
import json
import sys

HASH_VERSION = "audit-chain/v1"

HASH_FIELDS = (
    "event_id",
    "timestamp",
    "actor",
    "action",
    "entity_type",
    "entity_id",
    "correlation_id",
    "event_data",
)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_HASH_MISMATCH = 2
EXIT_CHAIN_BREAK = 3


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"error: {message}", file=sys.stderr)
        sys.exit(EXIT_USAGE)


def compute_hash(record, previous_hash):
    """Recompute the chain hash of one exported record."""
    parts = [HASH_VERSION, previous_hash or ""]
    for field in HASH_FIELDS:
        value = record.get(field)
        parts.append("" if value is None else str(value))
    payload = json.dumps(parts, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def verify_archive(path, chain_link=None):
    """Walk an archive; return ``(exit_code, message)``."""
    expected_previous = chain_link
    count = 0
    try:
        with gzip.open(path, "rt", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                record = json.loads(line)
                previous_hash = record.get("previous_hash")

                if compute_hash(record, previous_hash) != record.get("current_hash"):
                    return EXIT_HASH_MISMATCH, f"Hash mismatch detected at line {line_number}"

                if expected_previous is not None and (previous_hash or "") != (expected_previous or ""):
                    return EXIT_CHAIN_BREAK, f"Chain break detected at line {line_number}"

                expected_previous = record.get("current_hash")
                count += 1
    except FileNotFoundError:
        return EXIT_USAGE, f"Archive file {path} not found"
    except (OSError, ValueError) as e:
        return EXIT_USAGE, f"Unable to read archive {path}: {e}"

    return EXIT_OK, f"Chain verification completed successfully ({count} events)."


def main(argv=None):
    parser = _ArgumentParser(description="Verify an exported audit chain archive offline.")
    parser.add_argument("archive", help="path to audit-events-YYYY-MM-DD.jsonl.gz")
    parser.add_argument(
        "--chain-link",
        default=None,
        help="expected previous_hash of the first record (chain_link_hash in the metadata document)",
    )
    args = parser.parse_args(argv)

    code, message = verify_archive(args.archive, args.chain_link)
    print(message, file=sys.stdout if code == EXIT_OK else sys.stderr)
    return code


if __name__ == "__main__":
    sys.exit(main())
