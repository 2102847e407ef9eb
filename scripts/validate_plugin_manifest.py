#!/usr/bin/env python3
import argparse
from pathlib import Path

from agent_broker.cli import validate_manifest_file


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate plugin manifest JSON and list its disclosures")
    parser.add_argument("manifest_path", help="Path to plugin manifest JSON file")
    args = parser.parse_args()
    return validate_manifest_file(Path(args.manifest_path))


if __name__ == "__main__":
    raise SystemExit(main())
