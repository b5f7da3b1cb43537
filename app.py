"""Aplicación FastAPI principal del backend de simulaciones.

Expone autenticación, subida/descarga de archivos, simulaciones (creación,
consulta de estado, resultados), checkout de créditos, webhook de pagos,
formulario de contacto y tipos de cambio.
"""

import json
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, Depends, HTTPException, status, UploadFile, File, Request, BackgroundTasks, Query
from fastapi.responses import Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
import requests
import structlog
from models import User
from database import init_db, DBSession
from security import (
    hash_password, verify_password, create_token, decode_token, verify_download_token,
    sanitize_input, is_valid_email, SECURITY_HEADERS, CONTENT_SECURITY_POLICY,
)
from config import get_settings, ConfigurationError
from logging_config import setup_logging
from storage import FileStorage, StorageError, get_storage
from simulation import (
    SimulationService, InsufficientCreditsError, UserNotFoundError,
)
from jobs import JobService, SimulationApiError, run_submit_job
from payments import create_checkout_session, CheckoutError
from ledger import LedgerService
from webhooks import handle_event, verify_signature, WebhookSignatureError
from emails import send_contact_email, EmailError
from currency import get_currency_rates

settings = get_settings()
logger = structlog.get_logger(__name__)
app = FastAPI(title="Phage MD API", version="0.1.0")
security = HTTPBearer()
DOCS_PATHS = {app.docs_url, app.redoc_url, app.openapi_url, app.swagger_ui_oauth2_redirect_url}

# ---------------------------- Schemas ----------------------------
class RegisterPayload(BaseModel):
    """Payload para registro público de usuarios."""
    email: str
    password: str = Field(min_length=6)
    name: Optional[str] = None

class LoginPayload(BaseModel):
    """Payload para inicio de sesión y obtención de JWT."""
    email: str
    password: str

class SimulationParameters(BaseModel):
    temperature: float = Field(300, gt=0)
    duration: float = Field(..., gt=0)
    timestep: float = Field(2, gt=0)
    pressure: float = Field(1.0, gt=0)
    ensemble: str = "NVT"

class EquilibrationParameters(BaseModel):
    enabled: bool = False
    time: Optional[float] = Field(None, ge=0)
    temperature: Optional[float] = Field(None, gt=0)
    pressure: Optional[float] = Field(None, gt=0)
    timestep: Optional[float] = Field(None, gt=0)

class SimulationPayload(BaseModel):
    """Payload para crear una simulación a partir de archivos ya subidos."""
    name: str
    parameters: SimulationParameters
    equilibration: Optional[EquilibrationParameters] = None
    protein_file_id: str
    ligand_file_id: Optional[str] = None
    pdb_file: Optional[str] = None
    sdf_file: Optional[str] = None
    credits_used: Optional[int] = Field(None, gt=0)

class BillingAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

class CheckoutPayload(BaseModel):
    """Payload para comprar créditos."""
    credits: int = Field(..., gt=0)
    currency: Optional[str] = None
    country: Optional[str] = None
    billing_address: Optional[BillingAddress] = None
    payment_methods: Optional[List[str]] = None

class ContactPayload(BaseModel):
    name: str
    email: str
    subject: str
    message: str

# ----------------------- Auth Dependencies -----------------------

def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Obtiene el usuario autenticado a partir del token JWT o lanza 401."""
    data = decode_token(credentials.credentials)
    if not data:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    try:
        user_id = int(data.get('sub'))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")
    with DBSession() as s:
        user = s.get(User, user_id)
        if not user:
            raise HTTPException(status_code=401, detail="User not found")
        return user


def get_job_service() -> JobService:
    return JobService()


def user_to_dict(user: User) -> Dict[str, Any]:
    return {"id": user.id, "email": user.email, "name": user.name, "image": user.image, "credits": user.credits}

# ------------------------- Startup / Middleware ------------------
@app.on_event("startup")
def on_startup():
    """Configura logging, crea tablas y el directorio de almacenamiento."""
    setup_logging()
    init_db()
    settings.storage_dir.mkdir(parents=True, exist_ok=True)
    logger.info("app_started", database=settings.database_url.split('://')[0])


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for key, value in SECURITY_HEADERS.items():
        response.headers.setdefault(key, value)
    # Swagger y ReDoc cargan scripts de un CDN externo.
    if request.url.path not in DOCS_PATHS:
        response.headers.setdefault("Content-Security-Policy", CONTENT_SECURITY_POLICY)
    return response

# --------------------------- Auth Routes -------------------------
@app.post('/auth/register', status_code=201)
def register(payload: RegisterPayload):
    """Registra un usuario nuevo con el saldo inicial de créditos."""
    email = payload.email.strip().lower()
    if not is_valid_email(email):
        raise HTTPException(status_code=400, detail="Invalid email")
    with DBSession() as s:
        existing = s.query(User).filter(User.email == email).first()
        if existing:
            raise HTTPException(status_code=400, detail="Email already registered")
        u = User(
            email=email,
            name=sanitize_input(payload.name) if payload.name else None,
            password_hash=hash_password(payload.password),
            credits=settings.default_credits,
        )
        s.add(u)
        s.commit()
        s.refresh(u)
        logger.info("user_registered", user_id=u.id)
        return user_to_dict(u)

@app.post('/auth/login')
def login(payload: LoginPayload):
    """Autentica usuario y devuelve token JWT para futuras peticiones."""
    with DBSession() as s:
        user = s.query(User).filter(User.email == payload.email.strip().lower()).first()
        if not user or not verify_password(payload.password, user.password_hash):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        token = create_token(str(user.id))
        return {"access_token": token, "token_type": "bearer"}

@app.get('/auth/me')
def me(user: User = Depends(get_current_user)):
    return user_to_dict(user)

# ----------------------------- Storage ---------------------------
@app.post('/storage/upload', status_code=201)
def upload_file(file: UploadFile = File(...), user: User = Depends(get_current_user),
                storage: FileStorage = Depends(get_storage)):
    """Sube una estructura (PDB/SDF) y devuelve su storage id."""
    data = file.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    record = storage.store(data, file.filename or 'upload', file.content_type, owner_id=user.id)
    return {"storage_id": record.id, "filename": record.filename, "size": record.size}

@app.get('/storage/{storage_id}')
def download_file(storage_id: str, token: str = Query(...), storage: FileStorage = Depends(get_storage)):
    """Descarga un archivo mediante URL firmada."""
    if not verify_download_token(token, storage_id):
        raise HTTPException(status_code=403, detail="Invalid or expired download token")
    record = storage.get(storage_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Not found")
    try:
        data = storage.read(storage_id)
    except StorageError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return Response(
        content=data,
        media_type=record.content_type,
        headers={"Content-Disposition": f'attachment; filename="{record.filename}"'},
    )

# --------------------------- Simulations -------------------------
@app.post('/simulations', status_code=201)
def create_simulation(payload: SimulationPayload, background_tasks: BackgroundTasks,
                      user: User = Depends(get_current_user),
                      jobs: JobService = Depends(get_job_service)):
    """Crea la simulación, descuenta créditos y programa el envío del trabajo."""
    try:
        simulation = SimulationService.create_simulation(
            user_id=user.id,
            name=sanitize_input(payload.name),
            parameters=payload.parameters.model_dump(),
            equilibration=payload.equilibration.model_dump() if payload.equilibration else None,
            protein_file_id=payload.protein_file_id,
            ligand_file_id=payload.ligand_file_id,
            pdb_file=payload.pdb_file,
            sdf_file=payload.sdf_file,
            credits_used=payload.credits_used,
        )
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
    except UserNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    background_tasks.add_task(run_submit_job, simulation.id, jobs)
    return simulation

@app.get('/simulations')
def list_simulations(user: User = Depends(get_current_user)):
    return SimulationService.list_user_simulations(user.id)

@app.get('/simulations/{simulation_id}')
def get_simulation(simulation_id: int, user: User = Depends(get_current_user)):
    simulation = SimulationService.get_simulation(user.id, simulation_id)
    if not simulation:
        raise HTTPException(status_code=404, detail="Not found")
    return simulation

@app.post('/simulations/{simulation_id}/check-status')
def check_status(simulation_id: int, user: User = Depends(get_current_user),
                 jobs: JobService = Depends(get_job_service)):
    """Consulta el estado en la API de cómputo y actualiza el registro."""
    try:
        return jobs.check_job_status(user.id, simulation_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (SimulationApiError, StorageError, requests.RequestException) as e:
        raise HTTPException(status_code=502, detail=str(e))

@app.get('/simulations/{simulation_id}/download-url')
def results_download_url(simulation_id: int, user: User = Depends(get_current_user),
                         jobs: JobService = Depends(get_job_service)):
    try:
        url = jobs.get_results_download_url(user.id, simulation_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if url is None:
        raise HTTPException(status_code=404, detail="Results not available yet")
    return {"url": url}

# ----------------------------- Payments --------------------------
@app.post('/payments/checkout')
def checkout(payload: CheckoutPayload, user: User = Depends(get_current_user)):
    """Crea una sesión de checkout para comprar créditos."""
    try:
        return create_checkout_session(
            user,
            payload.credits,
            currency=payload.currency,
            country=payload.country,
            billing_address=payload.billing_address.model_dump() if payload.billing_address else None,
            payment_methods=payload.payment_methods,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (CheckoutError, requests.RequestException) as e:
        raise HTTPException(status_code=502, detail=str(e))

@app.post('/webhooks/dodopayments')
async def payments_webhook(request: Request):
    """Recibe eventos de pago/reembolso. Los errores de proceso se registran, no se propagan."""
    body = await request.body()
    try:
        if settings.payments_webhook_secret:
            payload = verify_signature(settings.payments_webhook_secret, body, dict(request.headers))
        else:
            payload = json.loads(body)
    except WebhookSignatureError as e:
        logger.warning("webhook_signature_rejected", error=str(e))
        raise HTTPException(status_code=401, detail=str(e))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    handled = handle_event(payload)
    return {"received": True, "handled": handled}

@app.get('/transactions')
def list_transactions(limit: int = 50, user: User = Depends(get_current_user)):
    """Lista las transacciones del usuario autenticado."""
    rows = LedgerService.list_user_transactions(user.id, limit)
    return [
        {"id": r.id, "amount": r.amount, "credits": r.credits, "status": r.status,
         "created_at": r.created_at.isoformat()}
        for r in rows
    ]

# -------------------------- Contact / Currency -------------------
@app.post('/contact')
def contact(payload: ContactPayload):
    """Reenvía el formulario de contacto al administrador por correo."""
    if not is_valid_email(payload.email):
        raise HTTPException(status_code=400, detail="Invalid email")
    try:
        return send_contact_email(
            sanitize_input(payload.name),
            payload.email.strip(),
            sanitize_input(payload.subject),
            sanitize_input(payload.message),
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except EmailError as e:
        raise HTTPException(status_code=502, detail=str(e))

@app.get('/currencies')
def currencies():
    return get_currency_rates().get()

# -------------------------- Utility ------------------------------
@app.get('/health')
def health():
    """Verificación básica de salud e integraciones configuradas."""
    return {
        "status": "ok",
        "payments_configured": bool(settings.payments_api_key and settings.payments_product_id),
        "email_configured": bool(settings.email_api_key),
        "simulation_api": settings.simulation_api_url,
    }
