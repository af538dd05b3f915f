"""Domain-specific errors for awgateway."""


class AwGatewayError(Exception):
    """Base error for awgateway."""


class InvalidConfiguration(AwGatewayError):
    """Raised when settings or sensor definition files are unusable."""


class DecodeError(AwGatewayError):
    """Base error for frames that cannot be trusted."""


class FramingError(DecodeError):
    """Raised when the header marker, command byte or size field is wrong."""


class TruncatedFrame(DecodeError):
    """Raised when the buffer is shorter than the frame declares."""


class ChecksumMismatch(DecodeError):
    """Raised when the trailing checksum byte does not match the frame."""

    def __init__(self, expected, received):
        super().__init__(f"Invalid checksum in gateway response. Expected '{expected}' (0x{expected:02X}), "
                         f"received '{received}' (0x{received:02X}).")
        self.expected = expected
        self.received = received


class UnknownField(AwGatewayError):
    """Diagnostic for a type code missing from the field table."""

    def __init__(self, type_code, offset):
        super().__init__(f"Failed to find parser for type id 0x{type_code:02x} at offset {offset}")
        self.type_code = type_code
        self.offset = offset


class UnmappedKey(AwGatewayError):
    """Diagnostic for a decoded key with no sensor definition."""

    def __init__(self, gateway_id, key, value):
        super().__init__(f"Failed to find sensor config for {gateway_id}:{key} - value {value}")
        self.gateway_id = gateway_id
        self.key = key
        self.value = value


class TransportFailure(AwGatewayError):
    """Raised when a gateway cannot be reached or does not answer."""


class PublishFailure(AwGatewayError):
    """Raised when a broker publish is not confirmed."""


class BrokerDisconnected(PublishFailure):
    """Raised when publishing on a session that is closed."""
