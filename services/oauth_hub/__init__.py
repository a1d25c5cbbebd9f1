"""
CrewFlow OAuth integration hub.

Connects end users to third-party services through a centrally managed
OAuth 2.0 lifecycle: authorization, token exchange, encrypted storage,
refresh, error classification and recovery.
"""

__version__ = "0.1.0"
