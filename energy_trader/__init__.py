"""Battery arbitrage trader for 15-minute day-ahead electricity prices"""

__version__ = '0.1.0'
