"""Engine exception hierarchy."""


class WebhookEngineError(Exception):
    """Base class for webhook engine errors."""


class EventValidationError(WebhookEngineError):
    """A producer submitted an event whose data does not match its declared type.

    This is a producer contract violation: the event is rejected at ingestion
    and never becomes a delivery.
    """

    def __init__(self, event_type: str | None, message: str):
        self.event_type = event_type
        super().__init__(f"Invalid event {event_type or '<unknown>'}: {message}")


class RegistryUnavailableError(WebhookEngineError):
    """The subscription registry could not be read. Transient."""


class LogStoreUnavailableError(WebhookEngineError):
    """The delivery log could not be written. Transient."""


class DeliveryNotFoundError(WebhookEngineError):
    """No delivery exists with the given id."""


class InvalidDeliveryStateError(WebhookEngineError):
    """The delivery is not in a state that allows the requested operation."""
