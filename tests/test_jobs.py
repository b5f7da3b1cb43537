"""
Tests for the simulation API client and job lifecycle orchestration.
"""
import json
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from jobs import JobService, SimulationApiClient, SimulationApiError, run_submit_job
from simulation import SimulationService

PARAMS = {"temperature": 300.0, "duration": 1.0, "timestep": 2.0, "pressure": 1.0, "ensemble": "NVT"}


@pytest.fixture
def api_client() -> MagicMock:
    return MagicMock(spec=SimulationApiClient)


@pytest.fixture
def service(api_client: MagicMock, storage: Any) -> JobService:
    return JobService(client=api_client, storage=storage)


@pytest.fixture
def simulation(user: Any, storage: Any) -> Any:
    protein = storage.store(b"PROTEIN", "protein.pdb").id
    ligand = storage.store(b"LIGAND", "ligand.sdf").id
    return SimulationService.create_simulation(
        user_id=user.id, name="Complex", parameters=PARAMS,
        protein_file_id=protein, ligand_file_id=ligand, credits_used=1,
    )


class TestSimulationApiClient:
    """Test suite for the REST client."""

    def test_submit_sends_multipart(self, fake_response: Any) -> None:
        client = SimulationApiClient("https://md.example/", timeout=5)
        with patch("jobs.requests.request", return_value=fake_response(json_data={"job_id": "job-1"})) as req:
            job_id = client.submit(b"PDB", {"nvt": {}}, ligand=b"SDF")

        assert job_id == "job-1"
        method, url = req.call_args.args
        assert (method, url) == ("POST", "https://md.example/jobs")
        files = dict(req.call_args.kwargs["files"])
        assert files["protein"][0] == "protein.pdb"
        assert files["ligand"][1] == b"SDF"
        assert json.loads(files["config"][1]) == {"nvt": {}}
        assert files["config"][2] == "application/json"
        assert req.call_args.kwargs["timeout"] == 5

    def test_submit_without_ligand(self, fake_response: Any) -> None:
        client = SimulationApiClient("https://md.example", timeout=5)
        with patch("jobs.requests.request", return_value=fake_response(json_data={"job_id": "j"})) as req:
            client.submit(b"PDB", {})
        names = [name for name, _ in req.call_args.kwargs["files"]]
        assert names == ["protein", "config"]

    def test_error_status_raises(self, fake_response: Any) -> None:
        client = SimulationApiClient("https://md.example", timeout=5)
        with patch("jobs.requests.request", return_value=fake_response(503, reason="Service Unavailable")):
            with pytest.raises(SimulationApiError, match="Modal API error: Service Unavailable"):
                client.status("job-1")

    def test_network_error_raises(self) -> None:
        client = SimulationApiClient("https://md.example", timeout=5)
        with patch("jobs.requests.request", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(SimulationApiError, match="refused"):
                client.download("job-1")

    def test_missing_job_id(self, fake_response: Any) -> None:
        client = SimulationApiClient("https://md.example", timeout=5)
        with patch("jobs.requests.request", return_value=fake_response(json_data={})):
            with pytest.raises(SimulationApiError, match="job_id"):
                client.submit(b"PDB", {})


class TestJobLifecycle:
    """Test suite for JobService."""

    def test_submit_job_marks_queued(self, service: JobService, api_client: MagicMock, simulation: Any) -> None:
        api_client.submit.return_value = "job-42"

        assert service.submit_job(simulation.id) == "job-42"

        protein, config = api_client.submit.call_args.args
        assert protein == b"PROTEIN"
        assert api_client.submit.call_args.kwargs["ligand"] == b"LIGAND"
        assert config["production"]["time_ns"] == 1.0
        record = SimulationService.get_by_id(simulation.id)
        assert record.status == "queued"
        assert record.modal_job_id == "job-42"
        assert record.current_step == "Queued"
        assert record.progress_percent == 0
        assert record.details == "Job submitted to Modal API"

    def test_submit_failure_recorded_and_reraised(
        self, service: JobService, api_client: MagicMock, simulation: Any
    ) -> None:
        api_client.submit.side_effect = SimulationApiError("Modal API error: Bad Gateway")

        with pytest.raises(SimulationApiError):
            service.submit_job(simulation.id)

        record = SimulationService.get_by_id(simulation.id)
        assert record.status == "failed"
        assert record.error == "Modal API error: Bad Gateway"
        assert record.details == "Failed to submit job to Modal API"

    def test_background_runner_swallows_failure(
        self, service: JobService, api_client: MagicMock, simulation: Any
    ) -> None:
        api_client.submit.side_effect = SimulationApiError("down")
        run_submit_job(simulation.id, service)
        assert SimulationService.get_by_id(simulation.id).status == "failed"

    def test_check_status_copies_fields(
        self, service: JobService, api_client: MagicMock, simulation: Any, user: Any
    ) -> None:
        SimulationService.update_simulation_status(simulation.id, modal_job_id="job-1", status="queued")
        api_client.status.return_value = {
            "status": "running",
            "current_step": "NPT equilibration",
            "progress_percent": 35.5,
            "time_elapsed_seconds": 120,
            "details": "step 5000",
            "analysis_data": {"rmsd": [0.1, 0.2]},
        }

        data = service.check_job_status(user.id, simulation.id)

        assert data["status"] == "running"
        record = SimulationService.get_by_id(simulation.id)
        assert record.status == "running"
        assert record.current_step == "NPT equilibration"
        assert record.progress_percent == 35.5
        assert record.time_elapsed_seconds == 120
        assert record.analysis_data == {"rmsd": [0.1, 0.2]}
        api_client.download.assert_not_called()

    def test_completed_job_downloads_results(
        self, service: JobService, api_client: MagicMock, simulation: Any, user: Any, storage: Any
    ) -> None:
        SimulationService.update_simulation_status(simulation.id, modal_job_id="job-1")
        api_client.status.return_value = {"status": "completed", "progress_percent": 100}
        api_client.download.return_value = b"TARBALL"

        service.check_job_status(user.id, simulation.id)

        record = SimulationService.get_by_id(simulation.id)
        assert record.status == "completed"
        assert record.details == "Results downloaded and stored"
        assert storage.read(record.result_file_id) == b"TARBALL"
        assert storage.get(record.result_file_id).content_type == "application/x-tar"

    def test_repeated_completed_polls_download_once(
        self, service: JobService, api_client: MagicMock, simulation: Any, user: Any
    ) -> None:
        SimulationService.update_simulation_status(simulation.id, modal_job_id="job-1")
        api_client.status.return_value = {"status": "completed", "progress_percent": 100}
        api_client.download.return_value = b"TARBALL"

        service.check_job_status(user.id, simulation.id)
        first = SimulationService.get_by_id(simulation.id).result_file_id
        service.check_job_status(user.id, simulation.id)

        api_client.download.assert_called_once_with("job-1")
        assert SimulationService.get_by_id(simulation.id).result_file_id == first

    def test_check_status_requires_job_id(self, service: JobService, simulation: Any, user: Any) -> None:
        with pytest.raises(LookupError, match="no Modal job ID"):
            service.check_job_status(user.id, simulation.id)

    def test_check_status_failure_recorded(
        self, service: JobService, api_client: MagicMock, simulation: Any, user: Any
    ) -> None:
        SimulationService.update_simulation_status(simulation.id, modal_job_id="job-1")
        api_client.status.side_effect = SimulationApiError("Modal API error: Not Found")

        with pytest.raises(SimulationApiError):
            service.check_job_status(user.id, simulation.id)

        record = SimulationService.get_by_id(simulation.id)
        assert record.status == "failed"
        assert record.details == "Failed to check job status"

    def test_download_failure_recorded(
        self, service: JobService, api_client: MagicMock, simulation: Any
    ) -> None:
        SimulationService.update_simulation_status(simulation.id, modal_job_id="job-1")
        api_client.download.side_effect = SimulationApiError("Modal API error: Gone")

        with pytest.raises(SimulationApiError):
            service.download_results(simulation.id)

        record = SimulationService.get_by_id(simulation.id)
        assert record.status == "failed"
        assert record.details == "Failed to download results"

    def test_download_url_none_until_stored(self, service: JobService, simulation: Any, user: Any) -> None:
        assert service.get_results_download_url(user.id, simulation.id) is None


def test_stored_results_retrievable_via_download_url(
    client: Any, auth_headers: Any, simulation: Any, storage: Any
) -> None:
    """A completed job's archive can be fetched from the generated URL."""
    api_client = MagicMock(spec=SimulationApiClient)
    api_client.download.return_value = b"RESULT-ARCHIVE"
    service = JobService(client=api_client, storage=storage)
    SimulationService.update_simulation_status(simulation.id, modal_job_id="job-9", status="completed")
    service.download_results(simulation.id)

    from app import app, get_job_service
    app.dependency_overrides[get_job_service] = lambda: service

    resp = client.get(f"/simulations/{simulation.id}/download-url", headers=auth_headers)
    assert resp.status_code == 200
    url = resp.json()["url"]

    download = client.get(url)
    assert download.status_code == 200
    assert download.content == b"RESULT-ARCHIVE"

    tampered = client.get(url.split("?")[0] + "?token=bogus")
    assert tampered.status_code == 403
