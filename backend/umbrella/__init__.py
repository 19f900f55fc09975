"""
Umbrella identity service.

Keeps provider-managed identities in sync with local User records, issues
and validates Umbrella session tokens, and enforces role-based access.
"""

__version__ = "1.0.0"
