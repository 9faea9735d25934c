"""Constants for the rotation module.

This module centralizes configuration values used across the rotation package.
"""

# Time constants (milliseconds unless otherwise noted)
ONE_SECOND_MILLISECONDS = 1000
ONE_MINUTE_MILLISECONDS = 60 * ONE_SECOND_MILLISECONDS
ONE_HOUR_MILLISECONDS = 60 * ONE_MINUTE_MILLISECONDS

# Account document schema version
STORAGE_VERSION = 1

# Largest timestamp accepted from the accounts file (2**53 - 1, the largest
# integer every JSON reader represents exactly)
MAX_TIMESTAMP_MILLISECONDS = 2**53 - 1
