"""ssokeeper - SSO session lifecycle management.

Creates, validates, refreshes and revokes sessions issued after an identity
provider login, with sliding and absolute expiration, per-user session
limits, background token refresh and encrypted credential persistence.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
