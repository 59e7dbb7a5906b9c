"""
MCP Stdio Entry Point.

Runs the NetcatKit tools over standard I/O for MCP clients that spawn the server
themselves. There is no HTTP API in this mode, and the session table belongs to
this process: sessions created over stdio go away when the client stops it.
"""

from netcatkit.app import mcp


def main():
    """Run the MCP server over stdio.

    Nothing may be printed to stdout here, it carries the JSON-RPC stream.
    """
    mcp.run()


if __name__ == "__main__":
    main()
