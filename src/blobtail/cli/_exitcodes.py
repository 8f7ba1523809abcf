"""Process exit codes for the blobtail CLI."""

SUCCESS = 0
GENERAL_ERROR = 1
USAGE_ERROR = 2
CONFIG_ERROR = 3
STORAGE_ERROR = 4
LEASE_ERROR = 5
REGISTRY_ERROR = 6
