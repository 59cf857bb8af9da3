"""
Payment gateways. Importing this package registers every provider.
"""

from gateways.base import IPaymentGateway, GatewayRegistry, gateway_registry
from gateways.telr import TelrGateway, TelrConfig
from gateways.paytabs import PayTabsGateway, PayTabsConfig

__all__ = [
    "IPaymentGateway",
    "GatewayRegistry",
    "gateway_registry",
    "TelrGateway",
    "TelrConfig",
    "PayTabsGateway",
    "PayTabsConfig",
]
