"""Exception types raised by the trader and its collaborators"""


class TraderError(Exception):
    """Base class for all trader errors"""


class DeviceError(TraderError):
    """Battery controller call failed or timed out"""


class PriceFetchError(TraderError):
    """Price provider returned no usable data"""


class PersistenceError(TraderError):
    """Trade ledger could not be written to disk"""


class NotificationError(TraderError):
    """Notification could not be delivered"""
