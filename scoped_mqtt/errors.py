"""
Exception hierarchy for the scoped MQTT connector.

Validation and credential errors are raised synchronously at the call that
caused them. TransportError is only ever delivered through callbacks and
lifecycle events, never raised into a caller's stack.
"""


class ConnectorError(Exception):
    """Base exception for all connector errors."""


class CredentialLoadError(ConnectorError):
    """One or more credential files are missing or unreadable."""

    def __init__(self, message: str = "Unable to load credentials. Please check the provided paths."):
        super().__init__(message)


class IdentityExtractionError(ConnectorError):
    """The client certificate could not be parsed."""

    def __init__(self, message: str = "Unable to extract the common name from the client certificate."):
        super().__init__(message)


class CredentialsNotLoadedError(ConnectorError):
    """Credentials were requested before a successful load."""

    def __init__(self, message: str = "Credentials are not loaded. Please load the credentials first."):
        super().__init__(message)


class InvalidHostError(ConnectorError, ValueError):
    """Broker host is not a non-empty string."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid host {value!r}. It must be a non-empty string.")


class InvalidPortError(ConnectorError, ValueError):
    """Broker port is not a positive integer in the TCP port range."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid port {value!r}. It must be a positive integer between 1 and 65535.")


class InvalidSchemeError(ConnectorError, ValueError):
    """Transport scheme is not one of the permitted schemes."""

    def __init__(self, value, permitted):
        self.value = value
        self.permitted = tuple(permitted)
        super().__init__(
            f"Invalid scheme {value!r}. Must be one of the following: {', '.join(self.permitted)}"
        )


class NotConnectedError(ConnectorError):
    """A topic operation was attempted without an open session."""

    def __init__(self, message: str = "Not connected. Call connect() first."):
        super().__init__(message)


class EmptyIdentityError(ConnectorError):
    """The client certificate carries no common name, so no topic namespace exists."""

    def __init__(self, message: str = "Client identity is empty; refusing to derive an unscoped topic."):
        super().__init__(message)


class InvalidTopicError(ConnectorError, ValueError):
    """A caller-supplied topic is empty or not a string."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid topic {value!r}. Topics must be non-empty strings.")


class TransportError(ConnectorError):
    """Error reported asynchronously by the message transport."""

    def __init__(self, message: str, reason_code=None):
        self.reason_code = reason_code
        super().__init__(message)
