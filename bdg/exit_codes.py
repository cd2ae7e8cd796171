"""Process exit codes.

User errors live in the 80-99 range, software and transport errors in 100-119.
"""

from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    GENERIC_FAILURE = 1

    # User errors
    INVALID_URL = 80
    INVALID_ARGUMENTS = 81
    PERMISSION_DENIED = 82
    RESOURCE_NOT_FOUND = 83
    RESOURCE_ALREADY_EXISTS = 84
    RESOURCE_BUSY = 85
    DAEMON_ALREADY_RUNNING = 86
    STALE_CACHE = 87

    # Software errors
    CHROME_LAUNCH_FAILURE = 100
    CDP_CONNECTION_FAILURE = 101
    CDP_TIMEOUT = 102
    SESSION_FILE_ERROR = 103
    UNHANDLED_EXCEPTION = 104
    SIGNAL_HANDLER_ERROR = 105
    SOFTWARE_ERROR = 110

    # Standard exit code for SIGINT
    INTERRUPTED = 130

    @property
    def is_user_error(self) -> bool:
        return 80 <= self.value < 100

    @property
    def is_software_error(self) -> bool:
        return 100 <= self.value < 120
