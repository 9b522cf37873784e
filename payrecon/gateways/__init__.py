from .base import PaymentGateway
from .factory import available_providers, create_gateway
from .mock import MockGateway
from .paddle import PaddleGateway
from .payfast import PayFastGateway
from .paymob import PaymobGateway
from .scheduler import VirtualScheduler
from .token_cache import TokenCache

__all__ = [
    "PaymentGateway", "create_gateway", "available_providers",
    "MockGateway", "PaddleGateway", "PayFastGateway", "PaymobGateway",
    "VirtualScheduler", "TokenCache",
]
