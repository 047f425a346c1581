class CourierError(Exception):
    """Base exception for delivery subsystem errors."""

class ConfigurationError(CourierError):
    """A channel cannot be bootstrapped with the configuration it was given."""

class ChannelUnavailableError(CourierError):
    """The channel could not reach its provider; nothing was sent."""

class DeliveryError(CourierError):
    """The provider was asked to deliver and refused or failed."""

class LeaseLostError(CourierError):
    """The message is no longer `processing` under the caller's channel."""

    def __init__(self, message_id, channel_id: str | None):
        super().__init__(f"message {message_id} is not held by channel {channel_id}")
        self.message_id = message_id
        self.channel_id = channel_id

class MessageNotFoundError(CourierError):
    pass

class IllegalTransitionError(CourierError):
    """Requested a state change the message lifecycle does not allow."""

class UnknownChannelError(CourierError):
    pass
