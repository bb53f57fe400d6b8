"""Exceptions raised by the supervisor."""


class SupervisorError(Exception):
    """Base class for supervisor errors."""


class ConfigError(SupervisorError):
    """An environment variable holds a value that cannot be used."""


class SpawnError(SupervisorError):
    """A managed process could not be started."""

    def __init__(self, role: str, command: list[str], reason: str):
        self.role = role
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start {role} ({' '.join(command)}): {reason}")
