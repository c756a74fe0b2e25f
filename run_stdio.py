"""
Stdio Entrypoint - For MCP Client Integration
Runs the FastMCP server in stdio mode.
"""
from factory_sync.main import mcp

if __name__ == "__main__":
    try:
        mcp.run()
    except KeyboardInterrupt:
        pass
