# ============================================================================
# toolpipe/__init__.py
# Package marker for the tool pipeline engine
# ============================================================================
#
# PURPOSE:
# toolpipe routes captured network messages through user-declared external
# command-line tools. A tool definition says which program to run, how the
# message bytes reach it (stdin or a temp file) and what the output means
# (a rendered view, a rewritten message, a highlight, a comment, a payload).
#
# SUBPACKAGES:
# - **model/**: Immutable tool definitions, parsing, observable list projection
# - **persistence/**: pad4 + zlib blob codec and settings stores
# - **engine/**: Process executor, stream pump, filters, dispatcher
# - **ghost/**: mitmproxy addon feeding live flows to the dispatcher
#
# ============================================================================

__version__ = "0.3.0"
