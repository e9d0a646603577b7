#!/usr/bin/env python3
"""
Settlement Engine - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Wires the database, the event bus and the settlement engine
into one process and runs the selected CLI mode.

============================================================
USAGE
============================================================
Direct execution:
    python app.py --mode demo --ticks 200 --seed 7

Environment-based configuration (.env):
    DATABASE_URL=sqlite:///settlement.db
    SETTLEMENT_FEE_RATE=0.001
    TELEGRAM_BOT_TOKEN=...
    TELEGRAM_CHAT_ID=...

See settlement_engine/cli.py for all modes.

============================================================
"""

import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.absolute()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from settlement_engine.cli import main


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
