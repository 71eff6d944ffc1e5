from .client import GatewayClient
from .config_types import ClientConfig
from .transport import ApiResponse, redact_body

__all__ = [
    "GatewayClient",
    "ClientConfig",
    "ApiResponse",
    "redact_body",
]
