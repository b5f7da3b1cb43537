"""Funciones de seguridad: hashing de contraseñas, JWT y saneamiento de entradas.

Se utiliza bcrypt vía passlib para almacenar contraseñas y PyJWT tanto para
los tokens de sesión como para las URLs firmadas de descarga.
"""

import re
from datetime import datetime, timedelta, timezone
from passlib.context import CryptContext
import jwt
from config import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
settings = get_settings()

EMAIL_REGEX = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
DOWNLOAD_PURPOSE = 'download'

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
}

CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    f"connect-src 'self' {settings.public_base_url}",
    "script-src 'self'",
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
    "font-src 'self' https://fonts.gstatic.com",
    "img-src 'self' data: https:",
    "frame-ancestors 'none'",
])

# hash_password: Genera hash bcrypt de una contraseña en texto plano.
def hash_password(password: str) -> str:
    # Truncar password a 72 bytes para compatibilidad bcrypt
    password_bytes = password.encode('utf-8')[:72]
    return pwd_context.hash(password_bytes.decode('utf-8', errors='ignore'))

# verify_password: Verifica si la contraseña suministrada coincide con el hash.
def verify_password(password: str, password_hash: str) -> bool:
    password_bytes = password.encode('utf-8')[:72]
    return pwd_context.verify(password_bytes.decode('utf-8', errors='ignore'), password_hash)

# create_token: Crea un JWT de sesión para el usuario, expirando en minutos configurados.
def create_token(sub: str):
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_exp_minutes)
    payload = {"sub": sub, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

# decode_token: Decodifica el JWT y retorna payload o None si inválido/expirado.
def decode_token(token: str):
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None
    if data.get('purpose'):
        # Un token de descarga no sirve como sesión.
        return None
    return data

# create_download_token: Token de corta duración ligado a un único archivo almacenado.
def create_download_token(storage_id: str) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.download_url_exp_minutes)
    payload = {"sid": storage_id, "purpose": DOWNLOAD_PURPOSE, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

# verify_download_token: True solo si el token es válido y corresponde al storage_id pedido.
def verify_download_token(token: str, storage_id: str) -> bool:
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return False
    return data.get('purpose') == DOWNLOAD_PURPOSE and data.get('sid') == storage_id

# sanitize_input: Elimina etiquetas, protocolo javascript: y manejadores on*= del texto.
def sanitize_input(value: str) -> str:
    value = re.sub(r'[<>]', '', value)
    value = re.sub(r'javascript:', '', value, flags=re.IGNORECASE)
    value = re.sub(r'on\w+=', '', value, flags=re.IGNORECASE)
    return value.strip()

def is_valid_email(email: str) -> bool:
    return bool(EMAIL_REGEX.match(email or ''))
