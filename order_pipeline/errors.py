"""
Order Pipeline — error taxonomy

Every class carries the HTTP status a webhook consumer answers with.
The queue retries 5xx answers and gives up on 4xx answers, so
``status_code`` encodes "will a retry ever help?".
"""


class PipelineError(Exception):
    status_code = 500


# ── Permanent (no retry) ─────────────────────────


class AuthenticationFailure(PipelineError):
    status_code = 401


class MissingSignature(AuthenticationFailure):
    pass


class InvalidSignature(AuthenticationFailure):
    pass


class MalformedMessage(PipelineError):
    status_code = 400


class BusinessInvariantViolation(PipelineError):
    """Retrying the same delivery cannot succeed; the event is dead-lettered."""

    status_code = 422


class ProductNotFound(BusinessInvariantViolation):
    def __init__(self, product_id: str, variation_id: str | None = None):
        self.product_id = product_id
        self.variation_id = variation_id
        target = f"variation {variation_id}" if variation_id else f"product {product_id}"
        super().__init__(f"{target} not found")


class InsufficientStock(BusinessInvariantViolation):
    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_id}: "
            f"requested={requested}, available={available}"
        )


class OrderNotFound(BusinessInvariantViolation):
    pass


class InvalidStatusTransition(BusinessInvariantViolation):
    pass


# ── Transient (retry) ────────────────────────────


class TransientProcessingFailure(PipelineError):
    status_code = 500


class PublishError(TransientProcessingFailure):
    """The queue did not accept a message."""


class SigningKeysNotConfigured(TransientProcessingFailure):
    """Deliveries cannot be verified until the keys are set; the queue keeps retrying."""
