class AutomationError(Exception):
    """Base class for automation engine errors."""


class TriggerConfigError(AutomationError):
    """An automation's trigger_config cannot be evaluated."""


class GraphValidationError(AutomationError):
    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class UnknownNodeType(AutomationError):
    def __init__(self, node_type):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type!r}")


class NodeConfigError(AutomationError):
    """A node is missing a required config field or has an invalid value."""


class ActionFailed(AutomationError):
    """An action node configured with failOnError could not complete."""


class RunNotFound(AutomationError):
    pass


class ChannelNotConfigured(AutomationError):
    pass


class QueueError(AutomationError):
    pass


class QueueNotConfigured(QueueError):
    pass


class InvalidSignature(QueueError):
    """A delivered job body failed signature verification."""


class UnsupportedMessage(QueueError):
    pass
