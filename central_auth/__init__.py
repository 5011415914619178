"""
Central authentication service.

Brokers logins with Microsoft Entra ID and Google, and issues RS256 platform
tokens carrying per-application claims to spoke applications.
"""

__version__ = "1.0.0"
