"""Error taxonomy for deployfleet runs."""

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
    "InsufficientInstanceCapacity",
}


class DeployFleetError(Exception):
    """Base class for every error raised by deployfleet."""

    retryable = False


class ValidationError(DeployFleetError):
    """Bad input. Raised before any call to the cloud provider."""


class NotFoundError(DeployFleetError):
    """A referenced cloud object (VPC, image, security group) does not exist."""


class ProviderError(DeployFleetError):
    """A cloud API call failed and should not be retried."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class TransientProviderError(ProviderError):
    """Throttling, capacity or timeout failure; safe to retry."""

    retryable = True


class PartialFleetFailure(DeployFleetError):
    """Some instances of a fleet failed while their siblings were created.

    Nothing is rolled back: re-running the apply creates the missing ones.
    """

    def __init__(self, fleet: str, failures: dict[int, str]):
        self.fleet = fleet
        self.failures = dict(sorted(failures.items()))
        detail = "; ".join(f"#{i}: {cause}" for i, cause in self.failures.items())
        super().__init__(
            f"Fleet '{fleet}' has {len(self.failures)} failed instance(s): {detail}"
        )


def classify_client_error(e: ClientError) -> DeployFleetError:
    """Map a botocore ClientError onto the deployfleet taxonomy."""
    code = e.response.get("Error", {}).get("Code", "Unknown")
    message = e.response.get("Error", {}).get("Message", str(e))
    if code in TRANSIENT_ERROR_CODES:
        return TransientProviderError(f"{code}: {message}", code=code)
    if code.endswith("NotFound"):
        return NotFoundError(f"{code}: {message}")
    return ProviderError(f"{code}: {message}", code=code)


def classify_exception(e: Exception) -> DeployFleetError:
    """Map any exception raised by boto3 onto the deployfleet taxonomy."""
    if isinstance(e, DeployFleetError):
        return e
    if isinstance(e, ClientError):
        return classify_client_error(e)
    if isinstance(e, (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)):
        return TransientProviderError(f"Timed out talking to AWS: {e}")
    return ProviderError(str(e))
