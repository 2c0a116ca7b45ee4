"""Error taxonomy for admission, inference and worker loss."""


class FleetError(Exception):
    """Base class for all dispatcher errors."""


class AdmissionRejected(FleetError):
    """Raised synchronously by admission when a request cannot be queued.

    Callers should not retry immediately: the queue is either full
    (back-pressure) or the request's deadline has already elapsed.
    """

    QUEUE_FULL = "queue_full"
    DEADLINE_ELAPSED = "deadline_elapsed"

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        super().__init__(detail or reason)


class InferenceError(FleetError):
    """Worker-side failure while running a batch. Retried via requeue."""


class RequestExpired(FleetError):
    """The request's deadline passed before it could be served."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"request {request_id} expired before completion")


class RequestFailed(FleetError):
    """The request exhausted its retries."""

    def __init__(self, request_id: str, detail: str):
        self.request_id = request_id
        super().__init__(f"request {request_id} failed: {detail}")


class WorkerLost(FleetError):
    """A worker disappeared (preemption or crash) with batches in flight."""


class UnknownWorkerClass(FleetError, KeyError):
    """A worker class name that is not in the catalog."""
