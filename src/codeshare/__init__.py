"""CodeShare — shared 2FA codes for groups, with live share links."""

__version__ = "0.1.0"
