#!/usr/bin/env python3
"""
Salesforce MCP Server - stdio launcher.

Runs the server from a source checkout without installing the package.
Configure credentials with SF_* environment variables.
"""

import sys
from pathlib import Path

# --- Add src to path ---
src_path = Path(__file__).parent / "src"
if src_path.exists():
    sys.path.insert(0, str(src_path))

from salesforce_mcp.server import main


if __name__ == "__main__":
    main()
