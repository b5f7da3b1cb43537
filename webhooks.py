"""Procesamiento de webhooks del proveedor de pagos.

Eventos soportados: payment.succeeded, payment.failed y refund.succeeded. Cada
paso se ejecuta de forma independiente: un fallo se registra y no impide los
siguientes. No hay protección contra reenvíos del mismo evento.
"""

import binascii
import math
from typing import Any, Callable, Dict, Optional, Tuple
import structlog
from standardwebhooks.webhooks import Webhook, WebhookVerificationError
from ledger import LedgerService

logger = structlog.get_logger(__name__)


class WebhookSignatureError(Exception):
    pass


def verify_signature(secret: str, body: bytes, headers: Dict[str, str]) -> Any:
    """Verifica la firma standard-webhooks y retorna el cuerpo JSON ya decodificado.

    Usa las cabeceras webhook-id, webhook-timestamp y webhook-signature; la
    librería rechaza marcas de tiempo fuera de su ventana de tolerancia.
    Lanza WebhookSignatureError si la firma no es válida.
    """
    webhook = Webhook(secret)
    try:
        return webhook.verify(body, headers)
    except (WebhookVerificationError, binascii.Error) as e:
        raise WebhookSignatureError(str(e) or "Invalid webhook signature") from e


# extract_user_and_credits: Lee user id y créditos de los metadatos libres del pago.
def extract_user_and_credits(data: Dict[str, Any]) -> Tuple[Optional[int], int]:
    metadata = data.get('metadata') or {}
    raw_user = metadata.get('user_id') or metadata.get('userId') or metadata.get('customer_id')
    user_id = None
    if raw_user is not None:
        try:
            user_id = int(raw_user)
        except (TypeError, ValueError):
            logger.error("webhook_invalid_user_id", user_id=raw_user)
    raw_credits = metadata.get('credits', metadata.get('credit_amount'))
    try:
        credits = float(raw_credits)
    except (TypeError, ValueError):
        credits = 0.0
    if not math.isfinite(credits):
        credits = 0.0
    return user_id, int(credits)


def _safely(step: str, fn: Callable, **kwargs):
    try:
        return fn(**kwargs)
    except Exception:
        logger.exception("webhook_step_failed", step=step)
        return None


def on_payment_succeeded(payload: Dict[str, Any]):
    data = payload.get('data') or {}
    user_id, credits = extract_user_and_credits(data)
    payment_id = data.get('payment_id') or 'unknown'
    if not user_id:
        logger.error("webhook_missing_user", payment_id=payment_id, metadata=data.get('metadata'))
        return

    _safely('log_event', LedgerService.log_payment_event,
            event_id=payment_id, type=payload.get('type') or 'payment.succeeded',
            payment_id=payment_id, user_id=user_id, credits=credits)
    _safely('store_transaction', LedgerService.store_payment_transaction,
            user_id=user_id, payment_id=payment_id, credits=credits,
            amount_in_cents=data.get('amount') or 0, status='succeeded',
            payment_method=data.get('payment_method'))
    if credits > 0:
        try:
            LedgerService.apply_credits_to_user(user_id, credits)
            LedgerService.log_payment_event(
                event_id=f"{payment_id}:resolved", type='payment.credited',
                payment_id=payment_id, user_id=user_id, credits=credits,
            )
        except Exception:
            logger.exception("webhook_step_failed", step='apply_credits')


def on_payment_failed(payload: Dict[str, Any]):
    data = payload.get('data') or {}
    user_id, _ = extract_user_and_credits(data)
    payment_id = data.get('payment_id') or 'unknown'
    if not user_id:
        logger.warning("webhook_missing_user", payment_id=payment_id)
        return
    _safely('log_event', LedgerService.log_payment_event,
            event_id=payment_id, type=payload.get('type') or 'payment.failed',
            payment_id=payment_id, user_id=user_id, credits=0)
    _safely('store_transaction', LedgerService.store_payment_transaction,
            user_id=user_id, payment_id=payment_id, credits=0,
            amount_in_cents=data.get('amount') or 0, status='failed')


def on_refund_succeeded(payload: Dict[str, Any]):
    data = payload.get('data') or {}
    user_id, credits = extract_user_and_credits(data)
    payment_id = data.get('payment_id') or 'unknown'
    if not user_id:
        logger.warning("webhook_missing_user", payment_id=payment_id)
        return
    # Los créditos no se revierten; solo queda constancia en el libro.
    _safely('log_event', LedgerService.log_payment_event,
            event_id=f"{payment_id}:refund", type='refund.succeeded',
            payment_id=payment_id, user_id=user_id, credits=credits)


HANDLERS: Dict[str, Callable[[Dict[str, Any]], None]] = {
    'payment.succeeded': on_payment_succeeded,
    'payment.failed': on_payment_failed,
    'refund.succeeded': on_refund_succeeded,
}


def handle_event(payload: Dict[str, Any]) -> bool:
    """Despacha el evento según su tipo. Retorna False si el tipo no se maneja."""
    event_type = payload.get('type')
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("webhook_ignored", type=event_type)
        return False
    logger.info("webhook_received", type=event_type)
    try:
        handler(payload)
    except Exception:
        logger.exception("webhook_handler_failed", type=event_type)
    return True
