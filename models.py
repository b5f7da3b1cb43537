"""Modelos de datos persistentes.

Incluye usuarios con saldo de créditos, simulaciones enviadas a la API de
cómputo, el libro de transacciones de pago y los metadatos de archivos
almacenados.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field

# utcnow: Marca de tiempo UTC con zona horaria.
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


SIMULATION_STATUSES = ('pending', 'queued', 'running', 'completed', 'failed')


class User(SQLModel, table=True):
    """Representa un usuario autenticable con saldo de créditos.

    Campos:
      email: Único, usado como identificador de inicio de sesión.
      password_hash: Hash seguro de la contraseña.
      credits: Saldo entero; se descuenta al enviar simulaciones.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: Optional[str] = None
    image: Optional[str] = None
    password_hash: str
    credits: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)


class StoredFile(SQLModel, table=True):
    """Metadatos de un blob opaco guardado en disco (estructuras o resultados)."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    filename: str
    content_type: str = Field(default='application/octet-stream')
    size: int
    sha256: str
    owner_id: Optional[int] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Simulation(SQLModel, table=True):
    """Simulación de dinámica molecular y su seguimiento.

    El estado y los campos de progreso solo cambian a través de
    update_simulation_status, alimentado por las consultas a la API externa.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key='user.id')
    name: str
    status: str = Field(default='pending', index=True)  # pending | queued | running | completed | failed
    parameters: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    equilibration: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    protein_file_id: str
    ligand_file_id: Optional[str] = None
    pdb_file: Optional[str] = None
    sdf_file: Optional[str] = None
    credits_used: int = 0
    modal_job_id: Optional[str] = Field(default=None, index=True)
    progress_percent: Optional[float] = None
    current_step: Optional[str] = None
    time_elapsed_seconds: Optional[float] = None
    details: Optional[str] = None
    error: Optional[str] = None
    analysis_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    result_file_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Transaction(SQLModel, table=True):
    """Fila del libro de pagos; solo se insertan, nunca se modifican."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    amount: float = 0.0
    credits: int = 0
    status: str  # payment.succeeded | succeeded | failed | payment.credited | refund.succeeded ...
    event_id: Optional[str] = Field(default=None, index=True)
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
