#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

mode = sys.argv[1] if len(sys.argv) > 1 else "mcp"

print(
    f"[devtools-bridge] mode={mode} | "
    f"relay={os.environ.get('MCP_DEVTOOLS_HOST', '127.0.0.1')}:{os.environ.get('MCP_DEVTOOLS_PORT', '9224')} | "
    f"timeout={os.environ.get('MCP_DEVTOOLS_REQUEST_TIMEOUT', '10')}s",
    file=sys.stderr,
)

if mode == "host":
    from mcp_servers.devtools_bridge.native_host import main  # noqa: E402
else:
    from mcp_servers.devtools_bridge.main import main  # noqa: E402

if __name__ == "__main__":
    main()
