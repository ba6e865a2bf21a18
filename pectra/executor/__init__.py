"""
Executor package.

Network-facing side of the toolkit: everything that reads chain state or
broadcasts transactions lives here, keeping ``pectra.helpers`` offline.
"""

__all__ = ["SetCodeSender", "get_delegation", "parse_delegation"]

from pectra.executor.eip7702_sender import SetCodeSender, get_delegation, parse_delegation
