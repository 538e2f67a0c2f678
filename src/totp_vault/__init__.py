"""
TotpVault - an offline TOTP authenticator with an encrypted vault
"""
from .config.config_vault import VERSION

__version__ = VERSION
