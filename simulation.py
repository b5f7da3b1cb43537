"""Servicio de alto nivel para registros de simulación.

Crea simulaciones descontando créditos del usuario, las lista y consulta por
propietario, aplica actualizaciones de estado y traduce los parámetros a la
configuración que espera la API de cómputo.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy import update
from sqlmodel import select
import structlog
from models import Simulation, StoredFile, User, SIMULATION_STATUSES
from database import DBSession

logger = structlog.get_logger(__name__)

MAX_NAME_LENGTH = 255

DEFAULT_FORCEFIELD = 'amber14-all'
DEFAULT_SOLVENT = {'model': 'tip3p', 'ionic_strength_molar': 0.15, 'padding_nm': 1.0}

# Campos que update_simulation_status puede modificar.
STATUS_FIELDS = (
    'status', 'modal_job_id', 'current_step', 'progress_percent', 'time_elapsed_seconds',
    'details', 'error', 'analysis_data', 'result_file_id',
)


class InsufficientCreditsError(Exception):
    """El usuario no tiene saldo suficiente para la simulación solicitada."""
    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. You need {required} credits but have {available}"
        )


class SimulationNotFoundError(Exception):
    pass


class UserNotFoundError(LookupError):
    pass


# required_credits: Un crédito por nanosegundo de producción, redondeando hacia arriba.
def required_credits(parameters: Dict[str, Any]) -> int:
    return max(1, math.ceil(float(parameters.get('duration', 0))))


def build_job_config(simulation: Simulation) -> Dict[str, Any]:
    """Traduce parámetros y equilibrado al JSON de configuración de la API de cómputo.

    El tiempo de equilibrado se reparte a partes iguales entre NVT y NPT. Sin
    equilibrado ambas fases quedan con 0 ns y las condiciones de producción.
    """
    params = simulation.parameters or {}
    temperature = float(params.get('temperature', 300))
    pressure = float(params.get('pressure', 1.0))
    timestep = float(params.get('timestep', 2.0))
    production = {
        'temperature_k': temperature,
        'pressure_bar': pressure,
        'timestep_fs': timestep,
        'time_ns': float(params.get('duration', 0)),
    }

    eq = simulation.equilibration or {}
    if eq.get('enabled'):
        eq_temperature = float(eq.get('temperature', temperature))
        eq_timestep = float(eq.get('timestep', timestep))
        half = float(eq.get('time', 0)) / 2
        nvt = {'temperature_k': eq_temperature, 'timestep_fs': eq_timestep, 'time_ns': half}
        npt = {
            'temperature_k': eq_temperature,
            'pressure_bar': float(eq.get('pressure', pressure)),
            'timestep_fs': eq_timestep,
            'time_ns': half,
        }
    else:
        nvt = {'temperature_k': temperature, 'timestep_fs': timestep, 'time_ns': 0.0}
        npt = {'temperature_k': temperature, 'pressure_bar': pressure, 'timestep_fs': timestep, 'time_ns': 0.0}

    return {
        'forcefield': {'protein': params.get('forcefield', DEFAULT_FORCEFIELD)},
        'solvent': dict(DEFAULT_SOLVENT),
        'nvt': nvt,
        'npt': npt,
        'production': production,
    }


class SimulationService:
    """Agrupa la lógica de creación, consulta y actualización de simulaciones."""
    @staticmethod
    def create_simulation(user_id: int, name: str, parameters: Dict[str, Any],
                          protein_file_id: str, equilibration: Optional[Dict[str, Any]] = None,
                          ligand_file_id: Optional[str] = None, pdb_file: Optional[str] = None,
                          sdf_file: Optional[str] = None,
                          credits_used: Optional[int] = None) -> Simulation:
        """Crea la simulación en estado pending y descuenta exactamente credits_used.

        Si el saldo es insuficiente no se escribe nada y se lanza
        InsufficientCreditsError. El envío a la API externa lo programa el llamador.
        """
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValueError("Invalid simulation name")
        if credits_used is None:
            credits_used = required_credits(parameters)
        if credits_used <= 0:
            raise ValueError("credits must be a positive number")

        with DBSession() as s:
            if s.get(User, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")
            for file_id in (protein_file_id, ligand_file_id):
                if file_id is not None and s.get(StoredFile, file_id) is None:
                    raise ValueError(f"Uploaded file {file_id} not found")

            # Descuento condicional en una sola sentencia: dos envíos simultáneos
            # no pueden ver el mismo saldo.
            debit = (
                update(User)
                .where(User.id == user_id, User.credits >= credits_used)
                .values(credits=User.credits - credits_used)
            )
            if s.connection().execute(debit).rowcount == 0:
                s.rollback()
                available = s.exec(select(User.credits).where(User.id == user_id)).one()
                raise InsufficientCreditsError(credits_used, available)

            simulation = Simulation(
                user_id=user_id,
                name=name,
                status='pending',
                parameters=parameters,
                equilibration=equilibration,
                protein_file_id=protein_file_id,
                ligand_file_id=ligand_file_id,
                pdb_file=pdb_file,
                sdf_file=sdf_file,
                credits_used=credits_used,
            )
            s.add(simulation)
            s.commit()
            s.refresh(simulation)
        logger.info("simulation_created", simulation_id=simulation.id, user_id=user_id,
                    credits_used=credits_used)
        return simulation

    @staticmethod
    def get_simulation(user_id: int, simulation_id: int) -> Optional[Simulation]:
        """Recupera la simulación solo si pertenece al usuario; None en otro caso."""
        with DBSession() as s:
            simulation = s.get(Simulation, simulation_id)
            if simulation is None or simulation.user_id != user_id:
                return None
            return simulation

    @staticmethod
    def get_by_id(simulation_id: int) -> Optional[Simulation]:
        with DBSession() as s:
            return s.get(Simulation, simulation_id)

    @staticmethod
    def list_user_simulations(user_id: int) -> List[Simulation]:
        """Lista las simulaciones del usuario, más recientes primero."""
        with DBSession() as s:
            statement = (
                select(Simulation)
                .where(Simulation.user_id == user_id)
                .order_by(Simulation.created_at.desc(), Simulation.id.desc())
            )
            return list(s.exec(statement).all())

    @staticmethod
    def update_simulation_status(simulation_id: int, **fields) -> Simulation:
        """Aplica solo los campos provistos (None significa "no provisto")."""
        unknown = set(fields) - set(STATUS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown simulation fields: {sorted(unknown)}")
        status = fields.get('status')
        if status is not None and status not in SIMULATION_STATUSES:
            logger.warning("unexpected_simulation_status", simulation_id=simulation_id, status=status)
        with DBSession() as s:
            simulation = s.get(Simulation, simulation_id)
            if simulation is None:
                raise SimulationNotFoundError(f"Simulation {simulation_id} not found")
            for key, value in fields.items():
                if value is not None:
                    setattr(simulation, key, value)
            simulation.updated_at = datetime.now(timezone.utc)
            s.add(simulation)
            s.commit()
            s.refresh(simulation)
            return simulation
