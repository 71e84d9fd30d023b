"""Error taxonomy shared by the lifecycle and telemetry services."""

from typing import Optional


class ManagerError(Exception):
    """Base class for every error raised by mcfleet services."""


class NotConfigured(ManagerError):
    """RCON is disabled or has no usable port/credential."""


class NotRunning(ManagerError):
    """The operation needs a live server process."""


class OperationTimeout(ManagerError):
    """An external process or network call exceeded its time bound."""


class ProcessFailure(ManagerError):
    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class ProtocolFailure(ManagerError):
    """RCON authentication was rejected or a packet was malformed."""


class NoPortAvailable(ManagerError):
    pass


class InstanceNotFound(ManagerError):
    def __init__(self, instance_id):
        super().__init__(f"Server instance not found: {instance_id}")
        self.instance_id = instance_id


class TemplateNotFound(ManagerError):
    def __init__(self, template_id):
        super().__init__(f"Server template not found: {template_id}")
        self.template_id = template_id


class IOFailure(ManagerError):
    pass
