#!/usr/bin/env python3
"""
Managed Wealth - process entry point.

Thin wrapper around orchestrator.cli so process managers can point at
a single file:

    python app.py --mode all
    python app.py --mode worker --single-cycle
    pm2 start app.py --interpreter python --name managed-wealth -- --mode all

SIGINT / SIGTERM stop the loops after the current cycle.
"""

import sys

from orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
