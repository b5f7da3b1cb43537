"""Libro de transacciones de pago y abono de créditos.

Las filas solo se insertan. El abono de créditos y el registro en el libro son
escrituras independientes, sin transacción que las englobe.
"""

from typing import List, Optional
from sqlalchemy import update
from sqlmodel import select
import structlog
from models import Transaction, User
from database import DBSession

logger = structlog.get_logger(__name__)


class LedgerService:
    """Registro de eventos de pago y actualización de saldos."""
    @staticmethod
    def log_payment_event(event_id: str, type: str, payment_id: Optional[str] = None,
                          user_id: Optional[int] = None,
                          credits: Optional[int] = None) -> Optional[Transaction]:
        """Inserta una fila por evento de pago. Sin user_id no escribe nada."""
        if not user_id:
            logger.error("payment_event_missing_user", event_id=event_id, type=type)
            return None
        with DBSession() as s:
            row = Transaction(
                user_id=user_id,
                amount=0.0,
                credits=int(credits or 0),
                status=type,
                event_id=event_id,
                payment_id=payment_id,
            )
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

    @staticmethod
    def store_payment_transaction(user_id: int, payment_id: str, credits: int, amount_in_cents: int,
                                  status: str, payment_method: Optional[str] = None) -> Transaction:
        """Inserta la fila con el importe convertido de centavos a unidades."""
        logger.info("storing_payment_transaction", user_id=user_id, amount=amount_in_cents / 100)
        with DBSession() as s:
            row = Transaction(
                user_id=user_id,
                amount=amount_in_cents / 100,
                credits=int(credits or 0),
                status=status,
                event_id=payment_id,
                payment_id=payment_id,
                payment_method=payment_method,
            )
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

    @staticmethod
    def apply_credits_to_user(user_id: int, credits: int) -> Optional[int]:
        """Suma créditos al usuario. No hace nada si credits <= 0 o el usuario no existe.

        Retorna el nuevo saldo, o None cuando no se aplicó.
        """
        if credits <= 0:
            return None
        with DBSession() as s:
            # Incremento en SQL: abonos simultáneos no se pisan entre sí.
            credit = (
                update(User)
                .where(User.id == user_id)
                .values(credits=User.credits + int(credits))
            )
            if s.connection().execute(credit).rowcount == 0:
                logger.error("credit_user_not_found", user_id=user_id)
                return None
            s.commit()
            current = s.exec(select(User.credits).where(User.id == user_id)).one()
            logger.info("credits_applied", user_id=user_id, credits=int(credits), current=current)
            return current

    @staticmethod
    def list_user_transactions(user_id: int, limit: int = 50) -> List[Transaction]:
        """Lista las transacciones del usuario, más recientes primero."""
        with DBSession() as s:
            statement = (
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.id.desc())
                .limit(limit)
            )
            return list(s.exec(statement).all())
