"""
Race condition tests for concurrent credit debits and credits.

Sync FastAPI routes run in a threadpool, so parallel requests for the same
user hit the database from several threads at once.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List

import pytest

from ledger import LedgerService
from simulation import InsufficientCreditsError, SimulationService

PARAMS = {"temperature": 300.0, "duration": 3.0, "timestep": 2.0, "pressure": 1.0, "ensemble": "NVT"}
WORKERS = 8


def run_together(fn: Callable[[], Any], workers: int = WORKERS) -> List[Any]:
    """Run fn in parallel threads released by a barrier; exceptions are returned, not raised."""
    barrier = threading.Barrier(workers)

    def call() -> Any:
        barrier.wait()
        try:
            return fn()
        except Exception as e:  # collected for assertions
            return e

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(call) for _ in range(workers)]
        return [f.result() for f in futures]


@pytest.fixture
def protein(storage: Any) -> str:
    return storage.store(b"ATOM      1  N   MET A   1", "protein.pdb").id


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.parametrize("balance, expected_created", [(5, 1), (10, 3)])
    def test_concurrent_simulations_never_overdraw(
        self, make_user: Any, protein: str, credits_of: Any, balance: int, expected_created: int
    ) -> None:
        """
        Parallel submissions for one user debit at most the available balance.

        Each submission costs 3 credits; the rest fail with InsufficientCreditsError.
        """
        user = make_user(credits=balance)

        results = run_together(lambda: SimulationService.create_simulation(
            user_id=user.id, name="Parallel", parameters=PARAMS, protein_file_id=protein, credits_used=3,
        ))

        created = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(created) == expected_created
        assert len(rejected) == WORKERS - expected_created
        assert credits_of(user.id) == balance - 3 * expected_created
        assert len(SimulationService.list_user_simulations(user.id)) == expected_created

    @pytest.mark.race
    def test_concurrent_credits_all_applied(self, user: Any, credits_of: Any) -> None:
        """
        Parallel payment credits for one user are all applied.

        No credit overwrites another; the final balance is the sum of all of them.
        """
        results = run_together(lambda: LedgerService.apply_credits_to_user(user.id, 10))

        assert not [r for r in results if isinstance(r, Exception)]
        assert credits_of(user.id) == 5 + 10 * WORKERS
        assert max(results) == 5 + 10 * WORKERS
