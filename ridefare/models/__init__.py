from ridefare.models.message import Message
from ridefare.models.order import Order, RideOrderDetail
from ridefare.models.price_rule import PriceRule
from ridefare.models.quote import PriceQuote
from ridefare.models.usage import RuleUsage, UsageReservation

__all__ = [
    "Message",
    "Order",
    "RideOrderDetail",
    "PriceRule",
    "PriceQuote",
    "RuleUsage",
    "UsageReservation",
]
