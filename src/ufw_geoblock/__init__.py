"""UFW allow-list synchronisation by country IP ranges"""

__version__ = "0.1.0"
