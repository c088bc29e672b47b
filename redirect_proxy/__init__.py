"""
Selective redirect proxy

Decrypts only tunnels to a fixed set of domains and rewrites their requests
to a local gateway; all other traffic passes through untouched.
"""

__version__ = "1.0.0"
