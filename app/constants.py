"""
Constants for punch directions, progress events and unregistered badges
"""

# Stored check_type values
CHECK_TYPE_IN = "I"
CHECK_TYPE_OUT = "O"

# Defaults applied when a raw record does not carry the field
DEFAULT_VERIFY_MODE = 1
DEFAULT_WORK_CODE = 0

# Progress stream event types
EVENT_CONNECTED = "connected"
EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"
TERMINAL_EVENTS = (EVENT_COMPLETE, EVENT_ERROR)

# Progress event schema version
PROGRESS_EVENT_VERSION = 1

UNKNOWN_EMPLOYEE_NAME = "Unknown Employee (Badge: {badge})"
NO_AUTH_RESULT_MESSAGE = "No auth result yet"
