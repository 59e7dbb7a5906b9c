"""
NetcatKit - Netcat-style TCP/UDP protocol tester.

NetcatKit manages any number of independent TCP and UDP sockets, each acting as a
client or a server, and exposes interactive send/receive testing with a live status
and message feed. Commands are available over a REST API and as an MCP server for AI
agents; events stream over a WebSocket.
"""
