"""HTTP service for the repair agent."""

from mermaid_fix_agent.web.server import create_app, run_server

__all__ = ["create_app", "run_server"]
