"""Módulo de configuración del backend de simulaciones.

Proporciona lectura de variables de entorno para la base de datos, el
almacenamiento de archivos y las integraciones externas (API de simulación,
pagos, correo transaccional y tipos de cambio).

Las credenciales de proveedores pueden faltar al arrancar; la operación que las
necesita es la que falla con un mensaje indicando qué variable configurar.
"""

import os
from pathlib import Path
from functools import lru_cache
from typing import Optional
from dotenv import load_dotenv

DEFAULT_SIMULATION_API_URL = 'https://greenrace66--md-fapi.modal.run'
DEFAULT_EXCHANGE_RATE_URL = 'https://api.exchangerate-api.com/v4/latest/USD'


class ConfigurationError(Exception):
    """Falta configuración obligatoria para una integración externa."""


# parse_bool: Interpreta valores típicos de variables de entorno como booleano.
def parse_bool(raw: Optional[str], default: bool = False) -> bool:
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


# get_settings: Devuelve (cacheado) la instancia única de Settings.
@lru_cache
def get_settings():
    return Settings()


class Settings:
    """Agrupa todos los parámetros de configuración usados en la aplicación.

    Se inicializa leyendo variables de entorno. Incluye base de datos,
    tokens, timeouts y credenciales de los proveedores externos.
    """
    def __init__(self):
        # Cargar .env local (aislado al directorio del módulo)
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'phage.db'
        self.database_url = os.getenv('PHAGE_DB_URL', f"sqlite:///{default_db_path}")
        self.storage_dir = Path(os.getenv('PHAGE_STORAGE_DIR', str(base_dir / 'storage')))
        self.public_base_url = os.getenv('PHAGE_PUBLIC_URL', 'http://localhost:8000').rstrip('/')

        self.jwt_secret = os.getenv('JWT_SECRET', 'dev-secret-change')
        self.jwt_algorithm = os.getenv('JWT_ALG', 'HS256')
        self.jwt_exp_minutes = int(os.getenv('JWT_EXP_MIN', '60'))
        self.download_url_exp_minutes = int(os.getenv('DOWNLOAD_URL_EXP_MIN', '60'))

        # Créditos iniciales al registrarse (1 crédito ≈ 1 ns de simulación).
        self.default_credits = int(os.getenv('DEFAULT_CREDITS', '5'))

        # API externa de simulación
        self.simulation_api_url = os.getenv('MODAL_API_URL', DEFAULT_SIMULATION_API_URL).rstrip('/')
        self.simulation_api_timeout = float(os.getenv('MODAL_API_TIMEOUT', '60'))

        # Proveedor de pagos
        self.payments_api_key = os.getenv('DODO_PAYMENTS_API_KEY')
        self.payments_product_id = os.getenv('DODO_PAYMENTS_PRODUCT_ID')
        self.payments_return_url = os.getenv('DODO_PAYMENTS_RETURN_URL')
        self.payments_environment = os.getenv('DODO_PAYMENTS_ENVIRONMENT', 'test_mode')
        self.payments_webhook_secret = os.getenv('DODO_PAYMENTS_WEBHOOK_SECRET')
        self.checkout_timeout = float(os.getenv('CHECKOUT_TIMEOUT', '15'))
        self.checkout_max_retries = int(os.getenv('CHECKOUT_RETRIES', '2'))

        # Correo transaccional
        self.email_api_key = os.getenv('BREVO_API_KEY')
        self.admin_email = os.getenv('ADMIN_EMAIL')
        self.sender_email = os.getenv('BREVO_SENDER_EMAIL')
        self.email_timeout = float(os.getenv('BREVO_TIMEOUT', '10'))

        # Tipos de cambio
        self.exchange_rate_url = os.getenv('EXCHANGE_RATE_URL', DEFAULT_EXCHANGE_RATE_URL)
        self.exchange_rate_ttl = int(os.getenv('EXCHANGE_RATE_TTL_SEC', '3600'))
        self.exchange_rate_timeout = float(os.getenv('EXCHANGE_RATE_TIMEOUT', '5'))

        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.log_json = parse_bool(os.getenv('LOG_JSON'))

    # payments_base_url: URL del proveedor de pagos según el entorno configurado.
    @property
    def payments_base_url(self) -> str:
        if self.payments_environment == 'live_mode':
            return 'https://live.dodopayments.com'
        return 'https://test.dodopayments.com'

    def require_payments(self):
        """Lanza ConfigurationError si falta alguna credencial del proveedor de pagos."""
        if not (self.payments_api_key and self.payments_product_id and self.payments_return_url):
            raise ConfigurationError(
                "Dodo Payments env is not configured. Please set DODO_PAYMENTS_API_KEY, "
                "DODO_PAYMENTS_PRODUCT_ID, DODO_PAYMENTS_RETURN_URL"
            )

    def require_email(self):
        if not self.email_api_key:
            raise ConfigurationError("BREVO_API_KEY not configured")
