"""
pgany - PostgreSQL wire protocol server for arbitrary backends

Speaks the startup handshake and simple query protocol of PostgreSQL v3 and
hands every query to a pluggable executor.
"""

__version__ = "0.1.0"
__author__ = "pgany contributors"

# Don't import server/protocol in __init__ so `python -m pgany` does not
# load the package modules twice. Import directly: from pgany.server import PGWireServer

__all__ = ["__version__", "__author__"]
