"""Module __init__: mitmproxy host adapter."""
#
# PURPOSE:
# Translates mitmproxy flows into dispatcher Messages and applies rewritten
# messages, highlights and comments back onto the flows.
#
# Browser <-> mitmproxy (ToolpipeAddon) <-> Target
#                  |
#            ToolDispatcher -> external tools
#

from .addon import ToolpipeAddon, ToolpipeInterceptor

__all__ = ["ToolpipeAddon", "ToolpipeInterceptor"]
