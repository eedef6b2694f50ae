"""Shared constants for the ticket layer."""

import re

WIGGUM_DIR_NAME = ".wiggum"
ORIGIN_DIR_NAME = "tickets.git"
REPLICA_DIR_NAME = "tickets"
HOOKS_DIR_NAME = "hooks"
TICKET_TYPES_FILE = "ticket_types.json"
CONFIG_FILE = "config.env"
HOOK_LOG_FILE = "hook.log"

DEFAULT_BRANCH = "main"
TICKET_SUFFIX = ".md"

# Ticket ids: prefix + short random hex token, e.g. tk-3f9a
TICKET_ID_PREFIX = "tk"
TICKET_ID_PATTERN = re.compile(r'^[a-z]+-[0-9a-f]{4,}$')

COMMITTER_NAME = "wiggum"
COMMITTER_EMAIL = "wiggum@local"

# CLI exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INVALID_ARGS = 2
EXIT_TICKET_NOT_FOUND = 3
EXIT_INVALID_TRANSITION = 4
EXIT_SYNC_FAILED = 5
EXIT_HOOK_VETOED = 6
