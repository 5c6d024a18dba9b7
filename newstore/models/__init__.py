from newstore.database.database import Base
from newstore.models.autopay import AutopayNumber, AutopayProfile, AutopayRun
from newstore.models.config_entry import ConfigEntry
from newstore.models.draw import Draw
from newstore.models.number_slot import NumberSlot
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.voucher import Voucher

__all__ = [
    "Base",
    "AutopayNumber",
    "AutopayProfile",
    "AutopayRun",
    "ConfigEntry",
    "Draw",
    "NumberSlot",
    "Payment",
    "Reservation",
    "Voucher",
]
