"""CI gate: assert the Alembic migration graph has exactly the expected heads.

Every new migration must chain off the current head. A second root
(down_revision = None) makes upgrade order non-deterministic.

If a new migration is added, update EXPECTED_HEADS to its revision id.

Usage:
  python .github/scripts/ci_alembic_heads_check.py
"""
from __future__ import annotations

import sys
from pathlib import Path

# Alembic needs the app directory on sys.path and the alembic.ini location.
app_root = Path(__file__).resolve().parents[2] / "apps" / "engagement"
sys.path.insert(0, str(app_root))

from alembic.config import Config
from alembic.script import ScriptDirectory

EXPECTED_HEADS = {"engagement_001"}
MAX_ROOTS = 1


def main() -> int:
    cfg = Config(str(app_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(app_root / "alembic"))

    script = ScriptDirectory.from_config(cfg)
    heads = set(script.get_heads())

    if heads != EXPECTED_HEADS:
        print("MIGRATION HEAD CHECK FAILED")
        print(f"  Expected heads: {sorted(EXPECTED_HEADS)}")
        print(f"  Actual heads:   {sorted(heads)}")
        unexpected = heads - EXPECTED_HEADS
        if unexpected:
            print("  New/unexpected heads:")
            for h in sorted(unexpected):
                print(f"    - {h}")
            print("  Fix: set down_revision to the current head instead of None,")
            print("  or update EXPECTED_HEADS if the new head is intentional.")
        return 1

    revisions = list(script.walk_revisions())
    roots = [r.revision for r in revisions if r.down_revision is None]

    if len(roots) > MAX_ROOTS:
        print("MIGRATION ROOT CHECK FAILED")
        print(f"  Expected at most {MAX_ROOTS} root, found {len(roots)}:")
        for r in sorted(roots):
            print(f"    - {r}")
        return 1

    print(f"Migration integrity check: OK ({len(heads)} heads, {len(roots)} roots, {len(revisions)} total)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
