"""SEO MCP gateway.

This package runs SEO analysis tool calls against the external `seo-mcp`
worker binary:
- One worker spawned per proxy request, gated by a concurrency pool.
- Recurring scheduled jobs polled from the DB and run through per-account workers.
- A small FastMCP control surface for the proxy call and schedule management.
"""

__version__ = "0.1.0"
