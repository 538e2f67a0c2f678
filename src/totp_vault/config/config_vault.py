# config_vault.py
"""
Configuration constants
"""
import os
import sys
from pathlib import Path
# ==============================================================
# Application settings
# ==============================================================
# Software version
VERSION = "0.2.0"

# Identifier used for the credential store service name and config folder
APP_ID = "com.totpvault.TotpVault"

# Folder holding config.json and error.log.
# TOTP_VAULT_CONFIG_DIR overrides the platform default.
if os.environ.get("TOTP_VAULT_CONFIG_DIR"):
    CONFIG_DIR = Path(os.environ["TOTP_VAULT_CONFIG_DIR"])
elif sys.platform == "win32":
    CONFIG_DIR = Path(os.environ.get("APPDATA", Path.home())) / APP_ID
elif sys.platform == "darwin":
    CONFIG_DIR = Path.home() / "Library" / "Application Support" / APP_ID
else:
    CONFIG_DIR = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")) / APP_ID

CONFIG_FILE = "config.json"
LOG_FILE = "error.log"

# Configuration keys
KEY_LAST_USER = "last-user"
KEY_SECRETS = "secrets"

# ==============================================================
# Vault encryption
# ==============================================================
# Length of generated random salt
SALT_LEN = 16

# Argon2id parameters
# Stored in every blob header, so changing them only affects new vaults.
ARGON_TIME = 6             # Iterations - controls CPU cost
ARGON_MEMORY = 256 * 1024  # 256 MiB - controls RAM cost
ARGON_PARALLELISM = 2
ARGON_HASH_LEN = 32        # bytes - Encryption key size - DO NOT CHANGE

# ChaCha20Poly1305 nonce length. DO NOT CHANGE
NONCE_LEN = 12

# Blob header magic and format version. DO NOT CHANGE
BLOB_MAGIC = b"TOTV"
BLOB_VERSION = 1

# ==============================================================
# TOTP defaults
# ==============================================================
DEFAULT_ALGORITHM = "SHA1"
DEFAULT_DIGITS = 6
DEFAULT_STEP = 30
DEFAULT_SKEW = 1
MIN_DIGITS = 6
MAX_DIGITS = 10

# ==============================================================
# Scheduling & workers
# ==============================================================
FRAME_INTERVAL = 1 / 30     # Seconds between countdown animation frames
WORKER_THREADS = 2          # Background workers for store I/O

# ==============================================================
# Clipboard security
# ==============================================================
CLIPBOARD_TIMEOUT = 30               # Seconds before auto-clear

# ==============================================================
# Display & formatting
# ==============================================================
UTF8 = "utf-8"
DT_FORMAT = "MMM D, YYYY hh:mm:ss A"
CLEAR_SCREEN = True

# ==============================================================
# System Constants
# ==============================================================
# length of eid
EID_LEN = 16

# length of visible name when displaying entries
LABEL_LEN = 18
ISSUER_LEN = 14

# separator
SEP_LG = "="*50
SEP_SM = "-"*50

# ==============================================================
# Optional: local overrides
# Local configuration file overrides standard config values

# ==============================================================
try:
    from .config_local import *
except ImportError:
    pass  # No local config, use defaults above
