"""Creación de sesiones de checkout con el proveedor de pagos.

Una clave de idempotencia por sesión, reintentos acotados ante errores 5xx o de
red con espera lineal más jitter, y timeout por intento.
"""

import math
import random
import time
import uuid
from typing import Any, Dict, List, Optional
import requests
import structlog
from config import get_settings
from models import User

logger = structlog.get_logger(__name__)

# 1 crédito = 0.10 USD
CREDIT_PRICE_USD = 0.10
SOURCE_TAG = 'phage_web'

COUNTRY_CURRENCIES = {
    'IN': 'INR',
    'GB': 'GBP',
    'CA': 'CAD',
    'AU': 'AUD',
    'EU': 'EUR',
    'DE': 'EUR',
    'FR': 'EUR',
    'IT': 'EUR',
    'ES': 'EUR',
    'NL': 'EUR',
    'JP': 'JPY',
    'SG': 'SGD',
    'AE': 'AED',
}
DEFAULT_PAYMENT_METHODS = ['credit', 'debit']
INDIA_PAYMENT_METHODS = ['upi_collect', 'upi_intent', 'credit', 'debit']


class CheckoutError(Exception):
    """El proveedor de pagos rechazó la creación de la sesión."""


# credits_to_cents: Importe en centavos para una cantidad de créditos.
def credits_to_cents(credits: float) -> int:
    return int(round(credits * CREDIT_PRICE_USD * 100))

# resolve_currency: Moneda explícita o deducida del país; USD por defecto.
def resolve_currency(country: str, currency: Optional[str] = None) -> str:
    if currency:
        return currency
    return COUNTRY_CURRENCIES.get(country, 'USD')

# resolve_payment_methods: Métodos explícitos o tarjetas, añadiendo UPI para India.
def resolve_payment_methods(country: str, methods: Optional[List[str]] = None) -> List[str]:
    if methods:
        return list(methods)
    if country == 'IN':
        return list(INDIA_PAYMENT_METHODS)
    return list(DEFAULT_PAYMENT_METHODS)


def build_checkout_payload(user: User, credits: float, product_id: str, return_url: str,
                           currency: Optional[str] = None, country: Optional[str] = None,
                           billing_address: Optional[Dict[str, Any]] = None,
                           payment_methods: Optional[List[str]] = None) -> Dict[str, Any]:
    """Construye el cuerpo JSON de POST /checkouts."""
    detected_country = (billing_address or {}).get('country') or country or 'US'
    payload: Dict[str, Any] = {
        'product_cart': [{
            'product_id': product_id,
            'quantity': 1,
            'amount': credits_to_cents(credits),
        }],
        'customer': {'email': user.email or '', 'name': user.name or ''},
        'allowed_payment_method_types': resolve_payment_methods(detected_country, payment_methods),
        'return_url': return_url,
        'billing_currency': resolve_currency(detected_country, currency),
        'metadata': {
            'user_id': str(user.id),
            'credits': str(credits),
            'source': SOURCE_TAG,
        },
    }
    if billing_address:
        payload['billing_address'] = {
            'street': billing_address.get('street'),
            'city': billing_address.get('city'),
            'state': billing_address.get('state'),
            'zipcode': billing_address.get('postal_code'),
            'country': billing_address.get('country'),
        }
    return payload


def post_with_retry(url: str, payload: Dict[str, Any], headers: Dict[str, str],
                    max_retries: int, timeout: float) -> requests.Response:
    """POST con hasta max_retries reintentos ante 5xx o fallo de red.

    La última respuesta se retorna tal cual (aunque sea 5xx) y el último error
    de red se propaga.
    """
    for attempt in range(max_retries + 1):
        try:
            resp = requests.post(url, json=payload, headers=headers, timeout=timeout)
        except requests.RequestException as e:
            if attempt < max_retries:
                logger.warning("checkout_network_retry", attempt=attempt + 1, error=str(e))
                time.sleep(0.25 * (attempt + 1) + random.uniform(0, 0.25))
                continue
            raise
        if 500 <= resp.status_code < 600 and attempt < max_retries:
            logger.warning("checkout_server_retry", attempt=attempt + 1, status=resp.status_code)
            time.sleep(0.2 * (attempt + 1) + random.uniform(0, 0.2))
            continue
        return resp


def create_checkout_session(user: User, credits: float, currency: Optional[str] = None,
                            country: Optional[str] = None,
                            billing_address: Optional[Dict[str, Any]] = None,
                            payment_methods: Optional[List[str]] = None) -> Dict[str, Any]:
    """Crea una sesión de checkout para comprar créditos y retorna su URL e id."""
    settings = get_settings()
    settings.require_payments()
    if credits is None or not math.isfinite(credits) or credits <= 0:
        raise ValueError("credits must be a positive number")

    payload = build_checkout_payload(
        user, credits, settings.payments_product_id, settings.payments_return_url,
        currency=currency, country=country, billing_address=billing_address,
        payment_methods=payment_methods,
    )
    headers = {
        'Content-Type': 'application/json',
        'Authorization': f"Bearer {settings.payments_api_key}",
        'Idempotency-Key': str(uuid.uuid4()),
    }
    resp = post_with_retry(
        f"{settings.payments_base_url}/checkouts", payload, headers,
        max_retries=settings.checkout_max_retries, timeout=settings.checkout_timeout,
    )
    if not resp.ok:
        body = resp.text or 'Unknown error'
        logger.error("checkout_failed", status=resp.status_code, body=body)
        raise CheckoutError(f"Dodo API error: {resp.status_code} - {body}")

    session = resp.json()
    logger.info("checkout_session_created", session_id=session.get('session_id'), user_id=user.id)
    return {
        'checkout_url': session.get('checkout_url'),
        'session_id': session.get('session_id'),
    }
