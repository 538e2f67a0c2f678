# Local configuration file overrides standard config values. Never commit this file!
# Used for changing user defaults

ARGON_TIME = 4
ARGON_MEMORY = 128 * 1024
CLIPBOARD_TIMEOUT = 20
FRAME_INTERVAL = 1 / 10
CLEAR_SCREEN = False

# Rename this file to config_local.py to enable it
