#!/usr/bin/env python3
"""
Remove the local library cache before sharing a checkout or building an image.

Deletes SQLite files and downloaded PDFs under backend/data and recreates the
.gitkeep placeholder so the directory stays in the repository.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = PROJECT_ROOT / "backend" / "data"
PLACEHOLDER = DATA_DIR / ".gitkeep"
PATTERNS = ("*.db", "*.sqlite", "*.sqlite3")


def _targets(data_dir: Path) -> list[Path]:
    files = [f for pattern in PATTERNS for f in data_dir.glob(pattern)]
    binaries = data_dir / "binaries"
    if binaries.exists():
        files.extend(sorted(binaries.glob("*.pdf")))
    return [f for f in files if f.name != PLACEHOLDER.name]


def wipe_data(data_dir: Path = DATA_DIR, dry_run: bool = False) -> int:
    """Delete cached databases and documents; returns how many files matched."""
    if not data_dir.exists():
        print(f"[INFO] Data directory {data_dir} does not exist, nothing to do.")
        return 0

    targets = _targets(data_dir)
    for file in targets:
        if dry_run:
            print(f"[DRY-RUN] Would delete: {file}")
        else:
            file.unlink(missing_ok=True)
            print(f"[OK] Deleted: {file}")

    if not targets:
        print("[INFO] No cached databases or documents found.")

    placeholder = data_dir / PLACEHOLDER.name
    if not placeholder.exists():
        if dry_run:
            print(f"[DRY-RUN] Would write placeholder: {placeholder}")
        else:
            placeholder.write_text(
                "This placeholder keeps the local cache directory in the repository.\n"
                "Make sure only test data (or nothing) lives here before committing.\n",
                encoding="utf-8",
            )
            print(f"[OK] Placeholder created: {placeholder}")
    return len(targets)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Delete the local library cache (databases and downloaded PDFs)."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only show what would be deleted.",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DATA_DIR,
        help="Cache directory to clean (default: backend/data).",
    )
    args = parser.parse_args(argv)
    wipe_data(args.data_dir, dry_run=args.dry_run)
    return 0


if __name__ == "__main__":
    sys.exit(main())
