"""Tipos de cambio para mostrar precios en moneda local.

Se consulta una API pública con base USD y el resultado se cachea. Si la
consulta falla se usan los valores por defecto.
"""

import time
from typing import Dict, List, Optional
import requests
import structlog
from config import get_settings

logger = structlog.get_logger(__name__)

# code, symbol, name, rate respecto a USD, importe mínimo en esa moneda
DEFAULT_CURRENCIES: List[Dict] = [
    {'code': 'USD', 'symbol': '$', 'name': 'US Dollar', 'rate': 1.0, 'min_amount': 0.5},
    {'code': 'INR', 'symbol': '₹', 'name': 'Indian Rupee', 'rate': 83.0, 'min_amount': 40},
    {'code': 'EUR', 'symbol': '€', 'name': 'Euro', 'rate': 0.92, 'min_amount': 0.5},
    {'code': 'GBP', 'symbol': '£', 'name': 'British Pound', 'rate': 0.79, 'min_amount': 0.5},
    {'code': 'CAD', 'symbol': 'C$', 'name': 'Canadian Dollar', 'rate': 1.35, 'min_amount': 0.5},
    {'code': 'AUD', 'symbol': 'A$', 'name': 'Australian Dollar', 'rate': 1.52, 'min_amount': 0.5},
    {'code': 'JPY', 'symbol': '¥', 'name': 'Japanese Yen', 'rate': 149.0, 'min_amount': 50},
    {'code': 'SGD', 'symbol': 'S$', 'name': 'Singapore Dollar', 'rate': 1.34, 'min_amount': 1},
    {'code': 'AED', 'symbol': 'د.إ', 'name': 'UAE Dirham', 'rate': 3.67, 'min_amount': 2},
]


class CurrencyRates:
    """Caché en memoria de tipos de cambio con expiración."""
    def __init__(self, url: Optional[str] = None, ttl: Optional[int] = None,
                 timeout: Optional[float] = None):
        settings = get_settings()
        self.url = url or settings.exchange_rate_url
        self.ttl = settings.exchange_rate_ttl if ttl is None else ttl
        self.timeout = timeout or settings.exchange_rate_timeout
        self._cached: Optional[List[Dict]] = None
        self._fetched_at = 0.0

    def get(self) -> List[Dict]:
        """Retorna las monedas con tasas vigentes (cacheadas o por defecto)."""
        now = time.monotonic()
        if self._cached is not None and now - self._fetched_at < self.ttl:
            return self._cached
        try:
            resp = requests.get(self.url, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError(f"Unexpected exchange rate payload: {type(data).__name__}")
            rates = data.get('conversion_rates') or data.get('rates') or {}
            currencies = [
                {**c, 'rate': float(rates.get(c['code']) or c['rate'])} for c in DEFAULT_CURRENCIES
            ]
        except (requests.RequestException, ValueError, TypeError, AttributeError) as e:
            logger.warning("exchange_rates_fallback", error=str(e))
            return [dict(c) for c in DEFAULT_CURRENCIES]

        self._cached = currencies
        self._fetched_at = now
        logger.info("exchange_rates_updated", count=len(rates))
        return self._cached

    def convert_from_usd(self, amount: float, code: str) -> float:
        """Convierte un importe en USD a la moneda indicada."""
        for currency in self.get():
            if currency['code'] == code:
                return round(amount * currency['rate'], 2)
        raise KeyError(f"Unsupported currency: {code}")


_rates: Optional[CurrencyRates] = None

# get_currency_rates: Instancia compartida por el proceso.
def get_currency_rates() -> CurrencyRates:
    global _rates
    if _rates is None:
        _rates = CurrencyRates()
    return _rates
