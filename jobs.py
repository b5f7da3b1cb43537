"""Cliente de la API externa de simulación y orquestación del ciclo de vida del trabajo.

Flujo: enviar estructuras + configuración (POST /jobs), guardar el job_id,
consultar el estado bajo demanda (GET /jobs/{id}/status) y, al completarse,
descargar el archivo de resultados (GET /jobs/{id}/tar) como blob opaco.

Cualquier error se escribe en el registro de la simulación y se vuelve a lanzar.
"""

import json
from typing import Any, Dict, Optional
import requests
import structlog
from config import get_settings
from simulation import SimulationService, build_job_config
from storage import FileStorage, get_storage

logger = structlog.get_logger(__name__)


class SimulationApiError(Exception):
    """Respuesta no exitosa o fallo de red al hablar con la API de cómputo."""


class SimulationApiClient:
    """Envoltorio mínimo sobre los tres endpoints REST de la API de cómputo."""
    def __init__(self, base_url: str, timeout: float):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    # _request: Ejecuta la llamada y normaliza errores HTTP/red a SimulationApiError.
    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            resp = requests.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise SimulationApiError(f"Modal API error: {e}") from e
        if not resp.ok:
            raise SimulationApiError(f"Modal API error: {resp.reason or resp.status_code}")
        return resp

    def submit(self, protein: bytes, config: Dict[str, Any], ligand: Optional[bytes] = None) -> str:
        """Envía el trabajo como multipart y retorna el job_id asignado."""
        files = [('protein', ('protein.pdb', protein, 'chemical/x-pdb'))]
        if ligand is not None:
            files.append(('ligand', ('ligand.sdf', ligand, 'chemical/x-mdl-sdfile')))
        files.append(('config', ('config.json', json.dumps(config), 'application/json')))
        resp = self._request('POST', '/jobs', files=files)
        job_id = resp.json().get('job_id')
        if not job_id:
            raise SimulationApiError("Modal API error: response did not include a job_id")
        return str(job_id)

    def status(self, job_id: str) -> Dict[str, Any]:
        return self._request('GET', f"/jobs/{job_id}/status").json()

    def download(self, job_id: str) -> bytes:
        return self._request('GET', f"/jobs/{job_id}/tar").content


# get_simulation_api_client: Cliente construido a partir de la configuración.
def get_simulation_api_client() -> SimulationApiClient:
    settings = get_settings()
    return SimulationApiClient(settings.simulation_api_url, settings.simulation_api_timeout)


class JobService:
    """Orquesta envío, consulta de estado y descarga de resultados de un trabajo."""
    def __init__(self, client: Optional[SimulationApiClient] = None,
                 storage: Optional[FileStorage] = None):
        self.client = client or get_simulation_api_client()
        self.storage = storage or get_storage()

    # _fail: Registra el error en la simulación; el llamador relanza la excepción original.
    def _fail(self, simulation_id: int, error: Exception, details: str):
        logger.error("job_step_failed", simulation_id=simulation_id, details=details, error=str(error))
        SimulationService.update_simulation_status(
            simulation_id,
            status='failed',
            error=str(error) or 'Unknown error',
            details=details,
        )

    def submit_job(self, simulation_id: int) -> str:
        """Lee las estructuras almacenadas, envía el trabajo y marca la simulación como queued."""
        try:
            simulation = SimulationService.get_by_id(simulation_id)
            if simulation is None:
                raise SimulationApiError(f"Simulation {simulation_id} not found")
            protein = self.storage.read(simulation.protein_file_id)
            ligand = self.storage.read(simulation.ligand_file_id) if simulation.ligand_file_id else None
            job_id = self.client.submit(protein, build_job_config(simulation), ligand=ligand)
            SimulationService.update_simulation_status(
                simulation_id,
                status='queued',
                modal_job_id=job_id,
                current_step='Queued',
                progress_percent=0,
                details='Job submitted to Modal API',
            )
        except Exception as e:
            self._fail(simulation_id, e, 'Failed to submit job to Modal API')
            raise
        logger.info("job_submitted", simulation_id=simulation_id, job_id=job_id)
        return job_id

    def check_job_status(self, user_id: int, simulation_id: int) -> Dict[str, Any]:
        """Consulta el estado remoto, lo copia al registro y descarga resultados si terminó."""
        simulation = SimulationService.get_simulation(user_id, simulation_id)
        if simulation is None or not simulation.modal_job_id:
            raise LookupError("Simulation not found or no Modal job ID")

        try:
            data = self.client.status(simulation.modal_job_id)
            SimulationService.update_simulation_status(
                simulation_id,
                status=data.get('status'),
                current_step=data.get('current_step'),
                progress_percent=data.get('progress_percent'),
                time_elapsed_seconds=data.get('time_elapsed_seconds'),
                details=data.get('details'),
                error=data.get('error'),
                analysis_data=data.get('analysis_data'),
            )
        except Exception as e:
            self._fail(simulation_id, e, 'Failed to check job status')
            raise

        logger.info("job_status_checked", simulation_id=simulation_id, status=data.get('status'))
        # Los resultados ya almacenados no se vuelven a descargar.
        if data.get('status') == 'completed' and not simulation.result_file_id:
            self.download_results(simulation_id)
        return data

    def download_results(self, simulation_id: int) -> str:
        """Descarga el tar de resultados, lo almacena y guarda su storage id."""
        simulation = SimulationService.get_by_id(simulation_id)
        if simulation is None or not simulation.modal_job_id:
            raise LookupError("Simulation not found or no Modal job ID")

        try:
            archive = self.client.download(simulation.modal_job_id)
            stored = self.storage.store(
                archive,
                filename=f"results_{simulation_id}.tar",
                content_type='application/x-tar',
                owner_id=simulation.user_id,
            )
            SimulationService.update_simulation_status(
                simulation_id,
                result_file_id=stored.id,
                details='Results downloaded and stored',
            )
        except Exception as e:
            self._fail(simulation_id, e, 'Failed to download results')
            raise
        return stored.id

    def get_results_download_url(self, user_id: int, simulation_id: int) -> Optional[str]:
        """URL firmada del archivo de resultados, o None si aún no se almacenó."""
        simulation = SimulationService.get_simulation(user_id, simulation_id)
        if simulation is None:
            raise LookupError("Simulation not found")
        if not simulation.result_file_id:
            return None
        return self.storage.get_url(simulation.result_file_id)


# run_submit_job: Punto de entrada para la tarea en segundo plano; registra y descarta el error.
def run_submit_job(simulation_id: int, service: Optional[JobService] = None):
    service = service or JobService()
    try:
        service.submit_job(simulation_id)
    except Exception:
        logger.exception("background_submit_failed", simulation_id=simulation_id)
