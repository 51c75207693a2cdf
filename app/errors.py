"""Error taxonomy shared by ingestion and analytics."""


class TrackingError(Exception):
    retryable = False


class ValidationError(TrackingError):
    """Malformed or out-of-range input. Raised before any state is touched."""

    def __init__(self, field, message):
        self.field = field
        super().__init__(f"{field}: {message}")


class UnknownDeviceError(TrackingError):
    def __init__(self, device_id):
        self.device_id = device_id
        super().__init__(f"device {device_id} not found or not owned by caller")


class TransientStoreError(TrackingError):
    """Backing store unavailable. The same unit of work may be replayed."""
    retryable = True


class QueueFullError(TrackingError):
    retryable = True

    def __init__(self, device_id, capacity):
        self.device_id = device_id
        super().__init__(f"ingest queue for device {device_id} is full ({capacity} pending)")


class InvariantViolation(TrackingError):
    """Detected defect in stored state. Logged and reconciled, never surfaced to callers."""
