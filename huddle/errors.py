"""Errors raised by the relay. Everything here is handled inside the relay;
only ConfigError is allowed to stop the process."""


class HuddleError(Exception):
    pass


class ConfigError(HuddleError):
    pass


class MalformedEvent(HuddleError):
    """Frame is not JSON, has an unknown type, or lacks routing fields."""


class TargetUnavailable(HuddleError):
    reason = 'peer not found'

    def __init__(self, target_id):
        super().__init__(f'{target_id} is not connected')
        self.target_id = target_id


class AlreadyInSession(HuddleError):
    reason = 'peer busy'

    def __init__(self, connection_id):
        super().__init__(f'{connection_id} is already in a call')
        self.connection_id = connection_id


class InvalidSignal(HuddleError):
    """Signal that does not fit the current call state."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


class TransportWriteFailure(HuddleError):
    def __init__(self, connection_id, cause):
        super().__init__(f'write to {connection_id} failed: {cause!r}')
        self.connection_id = connection_id
        self.cause = cause


class ChatStoreError(HuddleError):
    pass
