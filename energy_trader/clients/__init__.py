from energy_trader.clients.esphome import ESPHomeClient
from energy_trader.clients.marstek import MarstekClient
from energy_trader.clients.nordpool import NordPoolClient
from energy_trader.clients.ote import OtePriceProvider
from energy_trader.clients.telegram import TelegramNotifier

__all__ = ['ESPHomeClient', 'MarstekClient', 'NordPoolClient', 'OtePriceProvider', 'TelegramNotifier']
