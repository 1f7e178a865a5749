"""Centralized constants for stackpilot."""

# Managed stack identity
MANAGEMENT_LABEL = "com.doom-coding"
SAME_KIND_SIGNATURE = "code-server"
VPN_CONTAINER = "doom-tailscale"
IDE_CONTAINER = "doom-code-server"
ASSISTANT_CONTAINER = "doom-claude"

# Service keys used in port maps and access URLs
IDE_SERVICE_KEY = "code-server"
ASSISTANT_SERVICE_KEY = "ttyd"
IDE_PORT = 8443
ASSISTANT_PORT = 7681

# Ports probed for squatters on every detection pass
WELL_KNOWN_PORTS = (IDE_PORT, ASSISTANT_PORT)

# Dynamic port allocation range
PORT_RANGE_START = 8000
PORT_RANGE_END = 9000

# Migration
BACKUP_DIR_NAME = ".migration-backup"
BACKUP_DATE_FORMAT = "%Y%m%d-%H%M%S"
BACKUP_HELPER_IMAGE = "alpine"
ENV_FILE_NAME = ".env"
DEFAULT_BACKUP_VOLUMES = ("doom-code-server-config", "doom-claude-config")
CONFIG_BACKUP_TARGET = "doom-coding-config"
EXTERNAL_BACKUP_TARGET = "code-server-config"
STACK_TARGET = "doom-coding"
IMAGES_TARGET = "doom-coding-images"
EXTENSIONS_TARGET = "extensions"
SETTINGS_TARGET = "settings"
IDE_DATA_DIR = "/config/.local/share/code-server"
EXTERNAL_CONFIG_PATHS = (
    "/config/.local/share/code-server",
    "~/.local/share/code-server",
    "/home/coder/.local/share/code-server",
)
DRY_RUN_OUTPUT = "[DRY RUN] Would execute"

# Docker grace periods (seconds)
MIGRATION_STOP_GRACE = 30
FORCE_STOP_GRACE = 5

# Docker inspect template: "<status>,<health or empty>"
INSPECT_STATE_FORMAT = "{{.State.Status}},{{if .State.Health}}{{.State.Health.Status}}{{end}}"
NO_VALUE = "<no value>"

# VPN
VPN_CLI = "tailscale"
VPN_RUNNING_STATE = "Running"
HOST_VPN_NAME = "Host Tailscale"

# Logging
DEFAULT_COMPOSE_FILE = "docker-compose.yml"
LOG_FILE_NAME = "engine.log"
DURABLE_LOGGER_NAME = "stackpilot.engine"
MAX_LOG_ENTRIES = 1000
