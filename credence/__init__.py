"""
Credence - Credential Verification Engine

Checks a claimed academic identity against the evidence extracted from an
uploaded document and renders a time-bounded trust decision.
"""

__version__ = "0.1.0"

from credence.config import Config, get_config

__all__ = [
    "Config",
    "get_config",
]
