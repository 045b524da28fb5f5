"""
aitool - developer CLI for corporate OIDC login and AI coding agent configuration.
"""

__version__ = "0.4.0"
